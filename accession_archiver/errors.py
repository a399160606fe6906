"""
Exception hierarchy for the accession ingestion pipeline.

External collaborators (crawl service, object store) fail either transiently
(retry-eligible, bounded by the attempt ceiling) or permanently (terminal).
Repository races surface as ``ConflictError`` and are treated as no-ops.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "ArchiverError",
    "ExternalServiceError",
    "TransientExternalError",
    "PermanentExternalError",
    "ConflictError",
    "CrawlTimeoutError",
    "AccessionNotFoundError",
    "ArtifactNotFoundError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "InvalidAccessionError",
    "UnknownSubjectError",
]


class ArchiverError(Exception):
    """Base exception for the archiver.

    Attributes:
        code: Machine-readable error code
        message: Human-readable error message
    """

    code = "ARCHIVER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ExternalServiceError(ArchiverError):
    """A call to the crawl service or the object store failed."""

    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        service: str = "external",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["service"] = self.service
        data["status_code"] = self.status_code
        return data


class TransientExternalError(ExternalServiceError):
    """Network hiccup, timeout or 5xx: safe to retry later."""

    code = "TRANSIENT_EXTERNAL_ERROR"


class PermanentExternalError(ExternalServiceError):
    """The external service rejected the request: retrying will not help."""

    code = "PERMANENT_EXTERNAL_ERROR"


class ConflictError(ArchiverError):
    """A conditional status write lost the race against another writer."""

    code = "CONFLICT"

    def __init__(self, accession_id: str, expected_status: str, actual_status: Optional[str] = None):
        super().__init__(
            f"Accession {accession_id} is not in status {expected_status!r}"
            + (f" (found {actual_status!r})" if actual_status else "")
        )
        self.accession_id = accession_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class CrawlTimeoutError(ArchiverError, TimeoutError):
    """Polling a crawl job exceeded the maximum wait."""

    code = "CRAWL_TIMEOUT"

    def __init__(self, crawl_job_id: Optional[str], waited_seconds: float):
        super().__init__(
            f"crawl timed out after {int(waited_seconds)}s (job {crawl_job_id})"
        )
        self.crawl_job_id = crawl_job_id
        self.waited_seconds = waited_seconds


class AccessionNotFoundError(ArchiverError):
    code = "ACCESSION_NOT_FOUND"

    def __init__(self, accession_id: str):
        super().__init__(f"No such accession: {accession_id}")
        self.accession_id = accession_id


class ArtifactNotFoundError(ArchiverError):
    code = "ARTIFACT_NOT_FOUND"

    def __init__(self, key: str):
        super().__init__(f"Artifact not found: {key}")
        self.key = key


class InvalidTransitionError(ArchiverError):
    """A status change that the accession lifecycle does not allow."""

    code = "INVALID_TRANSITION"


class InvariantViolationError(ArchiverError):
    """A write would leave an accession with fields inconsistent with its status."""

    code = "INVARIANT_VIOLATION"


class InvalidAccessionError(ArchiverError):
    """Accession input failed validation."""

    code = "INVALID_ACCESSION"


class UnknownSubjectError(InvalidAccessionError):
    code = "UNKNOWN_SUBJECT"

    def __init__(self, subject_ids):
        ids = sorted(subject_ids)
        super().__init__(f"Unknown subject ids: {ids}")
        self.subject_ids = ids
