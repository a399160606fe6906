"""
Accession lifecycle: statuses, allowed transitions and field invariants.

    pending -> submitted -> polling -> artifact_fetching -> storing_artifact -> completed

Any non-terminal status may also move to ``failed``.

Same-status writes are allowed for the retryable states; they record retry
bookkeeping (attempt count, last error, next attempt time) without moving
the accession forward.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet

from .errors import InvalidTransitionError, InvariantViolationError


class AccessionStatus(str, Enum):
    """Lifecycle status of an accession."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    POLLING = "polling"
    ARTIFACT_FETCHING = "artifact_fetching"
    STORING_ARTIFACT = "storing_artifact"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Reason prefixes recorded in ``last_error`` when an accession fails."""

    SUBMISSION_EXHAUSTED = "crawl submission exhausted"
    SUBMISSION_REJECTED = "crawl submission rejected"
    CRAWL_FAILED = "crawl service reported failure"
    CRAWL_TIMED_OUT = "crawl timed out"
    ARTIFACT_RETRIEVAL_FAILED = "artifact retrieval failed"
    ARTIFACT_STORAGE_FAILED = "artifact storage failed"


TERMINAL_STATUSES: FrozenSet[AccessionStatus] = frozenset(
    {AccessionStatus.COMPLETED, AccessionStatus.FAILED}
)

# Statuses the scheduler picks up and drives forward
RESUMABLE_STATUSES: FrozenSet[AccessionStatus] = frozenset(
    {
        AccessionStatus.PENDING,
        AccessionStatus.SUBMITTED,
        AccessionStatus.POLLING,
        AccessionStatus.ARTIFACT_FETCHING,
        AccessionStatus.STORING_ARTIFACT,
    }
)

ALLOWED_TRANSITIONS: Dict[AccessionStatus, FrozenSet[AccessionStatus]] = {
    AccessionStatus.PENDING: frozenset(
        {AccessionStatus.PENDING, AccessionStatus.SUBMITTED, AccessionStatus.FAILED}
    ),
    AccessionStatus.SUBMITTED: frozenset(
        {AccessionStatus.POLLING, AccessionStatus.FAILED}
    ),
    AccessionStatus.POLLING: frozenset(
        {AccessionStatus.POLLING, AccessionStatus.ARTIFACT_FETCHING, AccessionStatus.FAILED}
    ),
    AccessionStatus.ARTIFACT_FETCHING: frozenset(
        {
            AccessionStatus.ARTIFACT_FETCHING,
            AccessionStatus.STORING_ARTIFACT,
            AccessionStatus.FAILED,
        }
    ),
    AccessionStatus.STORING_ARTIFACT: frozenset(
        {
            AccessionStatus.STORING_ARTIFACT,
            AccessionStatus.COMPLETED,
            AccessionStatus.FAILED,
        }
    ),
    AccessionStatus.COMPLETED: frozenset(),
    AccessionStatus.FAILED: frozenset(),
}

# Statuses that require a crawl job id on the row
_REQUIRES_JOB_ID = frozenset(
    {
        AccessionStatus.SUBMITTED,
        AccessionStatus.POLLING,
        AccessionStatus.ARTIFACT_FETCHING,
        AccessionStatus.STORING_ARTIFACT,
        AccessionStatus.COMPLETED,
    }
)

# Statuses that require the crawl's artifact locator on the row
_REQUIRES_LOCATOR = frozenset(
    {
        AccessionStatus.ARTIFACT_FETCHING,
        AccessionStatus.STORING_ARTIFACT,
        AccessionStatus.COMPLETED,
    }
)


def utcnow() -> datetime:
    """Current time as naive UTC, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_terminal(status: AccessionStatus) -> bool:
    return AccessionStatus(status) in TERMINAL_STATUSES


def check_transition(current: AccessionStatus, new: AccessionStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is allowed."""
    current = AccessionStatus(current)
    new = AccessionStatus(new)
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Transition {current.value} -> {new.value} is not allowed"
        )


def check_invariants(accession: Any) -> None:
    """Verify that an accession's fields agree with its status.

    Args:
        accession: Any object exposing the accession attributes
            (ORM row or snapshot)

    Raises:
        InvariantViolationError: If a field contradicts the status
    """
    status = AccessionStatus(accession.status)

    if (status is AccessionStatus.COMPLETED) != (
        accession.stored_artifact_reference is not None
    ):
        raise InvariantViolationError(
            f"Accession {accession.id}: stored_artifact_reference must be set "
            f"if and only if status is completed (status={status.value})"
        )

    if status is AccessionStatus.PENDING and accession.crawl_job_id is not None:
        raise InvariantViolationError(
            f"Accession {accession.id}: pending accession has a crawl job id"
        )

    if status in _REQUIRES_JOB_ID and accession.crawl_job_id is None:
        raise InvariantViolationError(
            f"Accession {accession.id}: status {status.value} requires a crawl job id"
        )

    if status in _REQUIRES_LOCATOR and accession.artifact_locator is None:
        raise InvariantViolationError(
            f"Accession {accession.id}: status {status.value} requires an artifact locator"
        )

    if accession.attempt_count < 0:
        raise InvariantViolationError(
            f"Accession {accession.id}: negative attempt count"
        )
