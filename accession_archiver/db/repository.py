"""
Accession repository: the only writer of durable accession state.

Every status change is a single conditional UPDATE on the expected prior
status, so concurrent schedulers (or replicas) need no lock beyond the
database row itself. Field invariants are verified inside the same
transaction; a write that would break them is rolled back before any reader
can observe it.
"""

import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session, sessionmaker

from ..errors import (
    AccessionNotFoundError,
    ConflictError,
    InvariantViolationError,
)
from ..lifecycle import AccessionStatus, check_invariants, check_transition, utcnow
from ..schemas.accession import (
    AccessionCreate,
    AccessionFilter,
    AccessionPage,
    AccessionRead,
)
from .models import AccessionModel

# Columns the orchestrator may set alongside a status change
MUTABLE_FIELDS = frozenset(
    {
        "crawl_job_id",
        "artifact_locator",
        "stored_artifact_reference",
        "last_error",
        "polling_started_at",
        "next_attempt_at",
    }
)


class AccessionRepository:
    """Persistence boundary for accession records."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, draft: AccessionCreate, now: Optional[datetime] = None) -> AccessionRead:
        """Persist a new accession. The status is always ``pending``."""
        now = now or utcnow()
        with self.session_factory() as db:
            row = AccessionModel(
                source_url=draft.source_url,
                title=draft.title,
                description=draft.description,
                metadata_language=draft.metadata_language,
                metadata_date=draft.metadata_date,
                subject_ids=list(draft.subject_ids),
                is_private=draft.is_private,
                browser_profile=draft.browser_profile,
                status=AccessionStatus.PENDING.value,
                attempt_count=0,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return AccessionRead.model_validate(row)

    def get_by_id(self, accession_id: str) -> AccessionRead:
        with self.session_factory() as db:
            row = db.get(AccessionModel, accession_id)
            if row is None:
                raise AccessionNotFoundError(accession_id)
            return AccessionRead.model_validate(row)

    def update_status(
        self,
        accession_id: str,
        expected_status: AccessionStatus,
        new_status: AccessionStatus,
        *,
        increment_attempts: bool = False,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> AccessionRead:
        """Move an accession to ``new_status`` if it is still in ``expected_status``.

        Args:
            accession_id: Accession to update
            expected_status: Status the caller last observed
            new_status: Status to write
            increment_attempts: Add one to ``attempt_count`` in the same write
            now: Timestamp for ``updated_at``
            **fields: Other columns to set (see ``MUTABLE_FIELDS``)

        Returns:
            Snapshot of the accession after the write

        Raises:
            ConflictError: The accession is no longer in ``expected_status``
            AccessionNotFoundError: No such accession
            InvalidTransitionError: The lifecycle does not allow the change
            InvariantViolationError: The resulting row would be inconsistent
        """
        expected_status = AccessionStatus(expected_status)
        new_status = AccessionStatus(new_status)
        check_transition(expected_status, new_status)

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set accession fields: {sorted(unknown)}")

        values: Dict[str, Any] = dict(fields)
        values["status"] = new_status.value
        values["updated_at"] = now or utcnow()
        if increment_attempts:
            values["attempt_count"] = AccessionModel.attempt_count + 1

        with self.session_factory() as db:
            return self._conditional_write(
                db,
                accession_id,
                expected_status,
                values,
                extra_criteria=(),
            )

    def claim(
        self,
        accession_id: str,
        expected_status: AccessionStatus,
        now: datetime,
        lease_until: datetime,
    ) -> AccessionRead:
        """Reserve the next step of an accession for one worker.

        Succeeds only when the accession is still in ``expected_status`` and
        its ``next_attempt_at`` gate has passed. The gate is pushed to
        ``lease_until`` so no other worker starts the same step until this
        one finishes or the lease runs out.

        Raises:
            ConflictError: Status changed or the accession is not yet due
            AccessionNotFoundError: No such accession
        """
        expected_status = AccessionStatus(expected_status)
        with self.session_factory() as db:
            return self._conditional_write(
                db,
                accession_id,
                expected_status,
                {"next_attempt_at": lease_until, "updated_at": now},
                extra_criteria=(
                    or_(
                        AccessionModel.next_attempt_at.is_(None),
                        AccessionModel.next_attempt_at <= now,
                    ),
                ),
            )

    def _conditional_write(
        self,
        db: Session,
        accession_id: str,
        expected_status: AccessionStatus,
        values: Dict[str, Any],
        extra_criteria: Iterable[Any],
    ) -> AccessionRead:
        result = db.execute(
            update(AccessionModel)
            .where(
                AccessionModel.id == accession_id,
                AccessionModel.status == expected_status.value,
                *extra_criteria,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            db.rollback()
            current = db.get(AccessionModel, accession_id)
            if current is None:
                raise AccessionNotFoundError(accession_id)
            raise ConflictError(accession_id, expected_status.value, current.status)

        row = db.get(AccessionModel, accession_id, populate_existing=True)
        snapshot = AccessionRead.model_validate(row)
        try:
            check_invariants(snapshot)
        except InvariantViolationError:
            db.rollback()
            raise
        db.commit()
        return snapshot

    def list_by_status(self, status: AccessionStatus) -> List[AccessionRead]:
        with self.session_factory() as db:
            rows = (
                db.query(AccessionModel)
                .filter(AccessionModel.status == AccessionStatus(status).value)
                .order_by(AccessionModel.created_at.asc())
                .all()
            )
            return [AccessionRead.model_validate(row) for row in rows]

    def list_due(
        self,
        statuses: Iterable[AccessionStatus],
        now: datetime,
        limit: int = 100,
    ) -> List[AccessionRead]:
        """Accessions in ``statuses`` whose next attempt time has passed, oldest first."""
        status_values = [AccessionStatus(s).value for s in statuses]
        with self.session_factory() as db:
            rows = (
                db.query(AccessionModel)
                .filter(AccessionModel.status.in_(status_values))
                .filter(
                    or_(
                        AccessionModel.next_attempt_at.is_(None),
                        AccessionModel.next_attempt_at <= now,
                    )
                )
                .order_by(AccessionModel.created_at.asc())
                .limit(limit)
                .all()
            )
            return [AccessionRead.model_validate(row) for row in rows]

    def list(self, params: Optional[AccessionFilter] = None) -> AccessionPage:
        """Paginated listing with optional filters, newest first."""
        params = params or AccessionFilter()
        with self.session_factory() as db:
            query = db.query(AccessionModel)

            if params.status is not None:
                query = query.filter(AccessionModel.status == params.status.value)
            if params.query_term:
                term = params.query_term
                query = query.filter(
                    or_(
                        AccessionModel.title.icontains(term, autoescape=True),
                        AccessionModel.description.icontains(term, autoescape=True),
                        AccessionModel.source_url.icontains(term, autoescape=True),
                    )
                )
            if params.date_from is not None:
                query = query.filter(AccessionModel.created_at >= params.date_from)
            if params.date_to is not None:
                query = query.filter(AccessionModel.created_at <= params.date_to)
            if params.is_private is not None:
                query = query.filter(AccessionModel.is_private.is_(params.is_private))

            total = query.count()
            rows = (
                query.order_by(AccessionModel.created_at.desc(), AccessionModel.id)
                .offset(params.page * params.per_page)
                .limit(params.per_page)
                .all()
            )
            return AccessionPage(
                items=[AccessionRead.model_validate(row) for row in rows],
                num_pages=math.ceil(total / params.per_page),
                page=params.page,
                per_page=params.per_page,
                total=total,
            )

    def count_by_status(self) -> Dict[str, int]:
        """Number of accessions per status (statuses with none are reported as 0)."""
        counts = {status.value: 0 for status in AccessionStatus}
        with self.session_factory() as db:
            rows = (
                db.query(AccessionModel.status, func.count(AccessionModel.id))
                .group_by(AccessionModel.status)
                .all()
            )
        for status, count in rows:
            counts[status] = count
        return counts
