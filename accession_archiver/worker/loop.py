"""
Ingestion scheduling loop.

Flow, every tick:
1. Discover: list accessions in resumable statuses whose next attempt is due
2. Dispatch: run ``orchestrator.advance`` for each as its own asyncio task,
   bounded by a semaphore, skipping accessions whose step is still in flight
3. Wait: sleep until the next tick or until stopped

Ticks do not wait for the steps they start, so a slow download or upload
for one accession never holds up the others. Only in-flight tasks are
tracked in memory. A step that crashes leaves its claim lease behind, and
the accession is picked up again once it expires.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from typing import Callable, Dict, List, Optional

from ..config import Settings, get_settings
from ..db.base import get_engine, get_session_local, init_database
from ..db.repository import AccessionRepository
from ..lifecycle import RESUMABLE_STATUSES, utcnow
from ..logging_config import configure_logging
from .crawler import create_crawl_client
from .orchestrator import IngestionOrchestrator
from .storage import create_artifact_store

logger = logging.getLogger(__name__)


class IngestionLoop:
    """Recurring scheduler for the ingestion orchestrator."""

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        repository: AccessionRepository,
        interval_seconds: float = 10,
        batch_size: int = 100,
        max_concurrency: int = 10,
        clock: Callable = utcnow,
    ):
        """Initialize the loop.

        Args:
            orchestrator: Orchestrator that performs each step
            repository: Repository used to discover due accessions
            interval_seconds: Seconds between ticks
            batch_size: Max accessions dispatched per tick
            max_concurrency: Max steps in flight at once
        """
        self.orchestrator = orchestrator
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.clock = clock
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

        logger.info(
            f"Ingestion loop initialized: id={self.worker_id}, "
            f"interval={interval_seconds}s, batch_size={batch_size}, "
            f"max_concurrency={max_concurrency}"
        )

    @property
    def running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def dispatch_due(self) -> List[asyncio.Task]:
        """Start a step for every due accession that is not already in flight."""
        due = self.repository.list_due(RESUMABLE_STATUSES, self.clock(), limit=self.batch_size)
        tasks = []
        for accession in due:
            if accession.id in self._in_flight:
                continue
            task = asyncio.create_task(
                self._advance(accession.id), name=f"advance-{accession.id}"
            )
            self._in_flight[accession.id] = task
            task.add_done_callback(
                lambda _, accession_id=accession.id: self._in_flight.pop(accession_id, None)
            )
            tasks.append(task)

        if tasks:
            logger.info(f"Dispatched {len(tasks)} accession(s), {self.in_flight} in flight")
        return tasks

    async def run_once(self) -> int:
        """Dispatch one step for every due accession and wait for them.

        Returns:
            Number of accessions dispatched
        """
        tasks = self.dispatch_due()
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def drain(self) -> None:
        """Wait for every step still in flight."""
        if not self._in_flight:
            return
        logger.info(f"Waiting for {self.in_flight} in-flight step(s)")
        await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _advance(self, accession_id: str) -> None:
        async with self.semaphore:
            try:
                await self.orchestrator.advance(accession_id)
            except Exception as e:
                logger.exception(f"Error advancing accession {accession_id}: {e}")

    async def run(self) -> None:
        """Tick until ``stop`` is called or a shutdown signal arrives."""
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()
        logger.info(f"Worker {self.worker_id} starting...")

        try:
            while not self._stop_event.is_set():
                try:
                    self.dispatch_due()
                except Exception as e:
                    logger.exception(f"Error in ingestion loop: {e}")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.drain()
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the loop to stop; ``run`` returns once in-flight steps finish."""
        logger.info(f"Worker {self.worker_id} stopping...")
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or the platform has no signal support
                logger.debug(f"Cannot install handler for signal {signum}")

    def _signal_handler(self, signum) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()


async def _run(settings: Settings, crawler_backend: str, once: bool) -> int:
    engine = get_engine(settings.database_url)
    init_database(engine)
    repository = AccessionRepository(get_session_local(engine))
    crawl_client = create_crawl_client(settings, crawler_backend)
    store = create_artifact_store(settings.artifact_store_uri, settings)
    orchestrator = IngestionOrchestrator.from_settings(settings, repository, crawl_client, store)
    loop = IngestionLoop(
        orchestrator,
        repository,
        interval_seconds=settings.scheduler_interval_seconds,
        batch_size=settings.scheduler_batch_size,
        max_concurrency=settings.max_concurrent_steps,
    )
    try:
        if once:
            return await loop.run_once()
        await loop.run()
        return 0
    finally:
        await crawl_client.aclose()


def run_worker(
    crawler_backend: str = "browsertrix",
    interval_seconds: Optional[int] = None,
    once: bool = False,
    settings: Optional[Settings] = None,
) -> int:
    """Run the ingestion loop.

    Args:
        crawler_backend: Crawl client to use ("browsertrix" or "memory")
        interval_seconds: Seconds between ticks (default from config)
        once: Run a single tick and return

    Returns:
        Number of accessions dispatched when ``once`` is set, else 0
    """
    settings = settings or get_settings()
    if interval_seconds:
        settings = settings.model_copy(update={"scheduler_interval_seconds": interval_seconds})
    configure_logging(settings)
    return asyncio.run(_run(settings, crawler_backend, once))
