"""
Ingestion worker - drives accessions from pending to completed.

Usage:
    python -m accession_archiver.worker

Components:
    - crawler: Crawl service clients (Browsertrix, in-memory)
    - storage: Artifact storage by URI (s3://, file://, memory://)
    - orchestrator: Per-accession state machine
    - loop: Scheduler that dispatches due accessions
"""

from .crawler import (
    BrowsertrixCrawlClient,
    CrawlClient,
    CrawlJobStatus,
    CrawlState,
    InMemoryCrawlClient,
    build_crawl_config,
    create_crawl_client,
)
from .loop import IngestionLoop, run_worker
from .orchestrator import IngestionOrchestrator
from .storage import (
    ArtifactStore,
    FileArtifactStore,
    InMemoryArtifactStore,
    S3ArtifactStore,
    artifact_key,
    create_artifact_store,
)

__all__ = [
    # Crawl service
    "CrawlClient",
    "CrawlJobStatus",
    "CrawlState",
    "BrowsertrixCrawlClient",
    "InMemoryCrawlClient",
    "build_crawl_config",
    "create_crawl_client",
    # Storage
    "ArtifactStore",
    "FileArtifactStore",
    "S3ArtifactStore",
    "InMemoryArtifactStore",
    "artifact_key",
    "create_artifact_store",
    # Pipeline
    "IngestionOrchestrator",
    "IngestionLoop",
    "run_worker",
]
