"""
Accession Archiver

Captures web content through an external crawling service and preserves
the resulting WACZ archives in durable object storage.
"""

import importlib.metadata

__version__ = importlib.metadata.version("accession-archiver")

from .errors import (
    ArchiverError,
    ConflictError,
    PermanentExternalError,
    TransientExternalError,
)
from .lifecycle import AccessionStatus, FailureReason
from .services.accessions import AccessionService
from .worker.orchestrator import IngestionOrchestrator

__all__ = [
    "AccessionService",
    "AccessionStatus",
    "ArchiverError",
    "ConflictError",
    "FailureReason",
    "IngestionOrchestrator",
    "PermanentExternalError",
    "TransientExternalError",
]
