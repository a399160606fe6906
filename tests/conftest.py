"""Test configuration and fixtures."""

from datetime import datetime, timedelta
from typing import Callable

import pytest
from sqlalchemy.orm import sessionmaker

from accession_archiver.db.base import create_database_engine, get_session_local, init_database
from accession_archiver.db.repository import AccessionRepository
from accession_archiver.schemas.accession import AccessionCreate, AccessionRead
from accession_archiver.worker.crawler import InMemoryCrawlClient
from accession_archiver.worker.orchestrator import IngestionOrchestrator
from accession_archiver.worker.storage import InMemoryArtifactStore


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_database_engine("sqlite://")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return get_session_local(engine)


@pytest.fixture
def repository(session_factory) -> AccessionRepository:
    return AccessionRepository(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def crawler() -> InMemoryCrawlClient:
    return InMemoryCrawlClient()


@pytest.fixture
def store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def orchestrator(repository, crawler, store, clock) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        repository,
        crawler,
        store,
        max_attempts=3,
        retry_backoff_seconds=60,
        poll_interval_seconds=60,
        max_poll_wait_seconds=1800,
        claim_lease_seconds=600,
        key_prefix="accessions",
        clock=clock,
    )


@pytest.fixture
def make_accession(repository, clock) -> Callable[..., AccessionRead]:
    """Persist a pending accession."""

    def _make(url: str = "https://example.org/page", title: str = "Example page", **fields):
        draft = AccessionCreate(url=url, title=title, **fields)
        return repository.create(draft, now=clock())

    return _make
