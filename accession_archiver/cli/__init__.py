"""
Command Line Interface for the Accession Archiver.
"""

import asyncio
from datetime import datetime
from typing import List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import get_engine, get_session_local, init_database
from ..db.repository import AccessionRepository
from ..db.subjects import SQLAlchemySubjectDirectory
from ..errors import ArchiverError
from ..lifecycle import AccessionStatus
from ..logging_config import configure_logging
from ..schemas.accession import AccessionFilter, AccessionRead
from ..services.accessions import AccessionService
from ..worker.loop import run_worker
from ..worker.storage import create_artifact_store

app = typer.Typer(help="Accession Archiver - capture and preserve web content")
console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "submitted": "cyan",
    "polling": "cyan",
    "artifact_fetching": "blue",
    "storing_artifact": "blue",
    "completed": "green",
    "failed": "red",
}


def _service(with_store: bool = False) -> AccessionService:
    settings = get_settings()
    engine = get_engine(settings.database_url)
    init_database(engine)
    session_factory = get_session_local(engine)
    store = create_artifact_store(settings.artifact_store_uri, settings) if with_store else None
    return AccessionService(
        AccessionRepository(session_factory),
        SQLAlchemySubjectDirectory(session_factory),
        artifact_store=store,
        key_prefix=settings.artifact_key_prefix,
        default_url_expiry=settings.presigned_url_expiry_seconds,
    )


def _status_text(status: AccessionStatus) -> str:
    style = STATUS_STYLES.get(status.value, "white")
    return f"[{style}]{status.value}[/{style}]"


def _fail(error: Exception) -> None:
    console.print(f"❌ {escape(str(error))}")
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db():
    """Create the database tables."""
    settings = get_settings()
    init_database(get_engine(settings.database_url))
    console.print("✅ Database initialized")


@app.command()
def create(
    url: str = typer.Argument(..., help="URL of the web content to archive"),
    title: str = typer.Option(..., "--title", "-t", help="Accession title"),
    description: Optional[str] = typer.Option(None, help="Accession description"),
    subject: List[int] = typer.Option([], "--subject", "-s", help="Subject id (repeatable)"),
    language: str = typer.Option("english", help="Metadata language (english/arabic)"),
    date: Optional[datetime] = typer.Option(None, help="Date the content refers to"),
    private: bool = typer.Option(False, "--private", help="Mark the accession private"),
    profile: Optional[str] = typer.Option(None, help="Crawler browser profile id"),
):
    """Register a new accession. The worker captures it asynchronously."""
    try:
        accession = _service().create_accession(
            url,
            title,
            subject,
            description=description,
            metadata_language=language,
            metadata_date=date,
            is_private=private,
            browser_profile=profile,
        )
    except ArchiverError as e:
        _fail(e)

    console.print(f"✅ Created accession [bold]{accession.id}[/bold] ({_status_text(accession.status)})")


@app.command()
def show(accession_id: str = typer.Argument(..., help="Accession id")):
    """Show one accession."""
    try:
        accession = _service().get_accession(accession_id)
    except ArchiverError as e:
        _fail(e)
    rprint(Panel.fit(_describe(accession), title=accession.title, style="bold"))


def _describe(accession: AccessionRead) -> str:
    lines = [
        f"id:          {accession.id}",
        f"url:         {accession.source_url}",
        f"status:      {_status_text(accession.status)}",
        f"subjects:    {', '.join(str(s) for s in accession.subject_ids) or '-'}",
        f"language:    {accession.metadata_language}",
        f"private:     {accession.is_private}",
        f"crawl job:   {accession.crawl_job_id or '-'}",
        f"artifact:    {accession.stored_artifact_reference or '-'}",
        f"attempts:    {accession.attempt_count}",
        f"created:     {accession.created_at.isoformat()}",
        f"updated:     {accession.updated_at.isoformat()}",
    ]
    if accession.last_error:
        lines.append(f"last error:  [red]{escape(accession.last_error)}[/red]")
    return "\n".join(lines)


@app.command("list")
def list_accessions(
    status: Optional[AccessionStatus] = typer.Option(None, help="Only this status"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title, description and url"),
    page: int = typer.Option(0, help="Page number (from 0)"),
    per_page: int = typer.Option(20, help="Accessions per page"),
):
    """List accessions, newest first."""
    try:
        params = AccessionFilter(status=status, query_term=query, page=page, per_page=per_page)
    except ValueError as e:
        _fail(e)
    result = _service().list_accessions(params)

    table = Table(
        title=f"Accessions (page {result.page + 1} of {max(result.num_pages, 1)}, {result.total} total)",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("URL")
    table.add_column("Created")
    for accession in result.items:
        table.add_row(
            accession.id,
            accession.title,
            _status_text(accession.status),
            accession.source_url,
            accession.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def status():
    """Show how many accessions are in each status."""
    counts = _service().repository.count_by_status()

    table = Table(title="Accession Pipeline Status", show_header=True, header_style="bold magenta")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for name, count in counts.items():
        table.add_row(_status_text(AccessionStatus(name)), str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{sum(counts.values())}[/bold]")
    console.print(table)


@app.command("download-url")
def download_url(
    accession_id: str = typer.Argument(..., help="Accession id"),
    expires_in: Optional[int] = typer.Option(None, help="URL lifetime in seconds"),
):
    """Print a time-limited download URL for a completed accession."""
    service = _service(with_store=True)
    try:
        url = asyncio.run(service.artifact_download_url(accession_id, expires_in))
    except ArchiverError as e:
        _fail(e)
    console.print(url)


@app.command()
def worker(
    once: bool = typer.Option(False, help="Run a single scheduler tick and exit"),
    crawler: str = typer.Option("browsertrix", help="Crawl backend (browsertrix/memory)"),
    interval: Optional[int] = typer.Option(None, help="Seconds between ticks"),
):
    """Run the ingestion worker."""
    rprint(Panel.fit("🏗️ Starting ingestion worker", style="bold blue"))
    configure_logging()
    try:
        dispatched = run_worker(crawler_backend=crawler, interval_seconds=interval, once=once)
    except KeyboardInterrupt:
        console.print("\n🛑 Shutting down...")
        return
    if once:
        console.print(f"✅ Dispatched {dispatched} accession(s)")


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
