"""
Ingestion orchestrator: drives one accession at a time through its lifecycle.

    pending -> submitted -> polling -> artifact_fetching -> storing_artifact -> completed

The orchestrator keeps no state of its own. Each pass re-reads the row,
claims the next step with a conditional write (which also sets a short
lease so no other pass starts the same external call), performs at most one
external call per step and records the outcome with another conditional
write. A lost race anywhere surfaces as ConflictError and ends the pass as
a no-op.
"""
from __future__ import annotations

import io
from datetime import datetime, timedelta
from typing import Awaitable, BinaryIO, Callable, Dict, Optional

import structlog

from ..config import Settings
from ..db.repository import AccessionRepository
from ..errors import (
    ConflictError,
    CrawlTimeoutError,
    InvalidTransitionError,
    PermanentExternalError,
    TransientExternalError,
)
from ..lifecycle import AccessionStatus, FailureReason, is_terminal, utcnow
from ..schemas.accession import AccessionRead
from .crawler import CrawlClient, CrawlState
from .storage import ArtifactStore, artifact_key

logger = structlog.get_logger()

Step = Callable[[AccessionRead], Awaitable[AccessionRead]]


class IngestionOrchestrator:
    """State machine over accession rows."""

    def __init__(
        self,
        repository: AccessionRepository,
        crawl_client: CrawlClient,
        artifact_store: ArtifactStore,
        *,
        max_attempts: int = 5,
        retry_backoff_seconds: int = 60,
        poll_interval_seconds: int = 60,
        max_poll_wait_seconds: int = 1800,
        claim_lease_seconds: int = 600,
        key_prefix: str = "accessions",
        content_type: str = "application/wacz",
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.repository = repository
        self.crawl_client = crawl_client
        self.artifact_store = artifact_store
        self.max_attempts = max_attempts
        self.retry_backoff = timedelta(seconds=retry_backoff_seconds)
        self.poll_interval = timedelta(seconds=poll_interval_seconds)
        self.max_poll_wait = timedelta(seconds=max_poll_wait_seconds)
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.key_prefix = key_prefix
        self.content_type = content_type
        self.clock = clock
        self.logger = logger.bind(crawler=crawl_client.name)

        self._steps: Dict[AccessionStatus, Step] = {
            AccessionStatus.PENDING: self.submit,
            AccessionStatus.SUBMITTED: self._begin_polling,
            AccessionStatus.POLLING: self.poll,
            AccessionStatus.ARTIFACT_FETCHING: self.fetch_artifact,
            AccessionStatus.STORING_ARTIFACT: self.fetch_artifact,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: AccessionRepository,
        crawl_client: CrawlClient,
        artifact_store: ArtifactStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> "IngestionOrchestrator":
        return cls(
            repository,
            crawl_client,
            artifact_store,
            max_attempts=settings.max_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_poll_wait_seconds=settings.max_poll_wait_seconds,
            claim_lease_seconds=settings.claim_lease_seconds,
            key_prefix=settings.artifact_key_prefix,
            content_type=settings.artifact_content_type,
            clock=clock,
        )

    def _log(self, accession: AccessionRead):
        return self.logger.bind(
            accession_id=accession.id,
            status=accession.status.value,
            crawl_job_id=accession.crawl_job_id,
        )

    def _lease_until(self) -> datetime:
        return self.clock() + self.claim_lease

    async def advance(self, accession_id: str) -> Optional[AccessionRead]:
        """Run the next step for an accession.

        Returns:
            The accession after the step, the unchanged accession if it is
            already terminal, or None if another pass owns it right now
        """
        accession = self.repository.get_by_id(accession_id)
        if is_terminal(accession.status):
            return accession

        now = self.clock()
        try:
            claimed = self.repository.claim(
                accession.id, accession.status, now=now, lease_until=now + self.claim_lease
            )
            return await self._steps[claimed.status](claimed)
        except ConflictError as e:
            self._log(accession).debug("accession_step_skipped", reason=e.message)
            return None

    async def submit(self, accession: AccessionRead) -> AccessionRead:
        """Start the crawl for a pending accession."""
        self._require(accession, AccessionStatus.PENDING)
        log = self._log(accession)

        try:
            job_id = await self.crawl_client.submit_job(
                accession.source_url, profile_id=accession.browser_profile
            )
        except TransientExternalError as e:
            log.warning("crawl_submit_transient_error", **e.to_dict())
            return self._retry_or_fail(accession, e, FailureReason.SUBMISSION_EXHAUSTED)
        except PermanentExternalError as e:
            log.error("crawl_submit_rejected", **e.to_dict())
            return self._fail(
                accession,
                f"{FailureReason.SUBMISSION_REJECTED.value}: {e}",
                increment_attempts=True,
            )

        submitted = self.repository.update_status(
            accession.id,
            AccessionStatus.PENDING,
            AccessionStatus.SUBMITTED,
            now=self.clock(),
            crawl_job_id=job_id,
            last_error=None,
            next_attempt_at=self._lease_until(),
        )
        log.bind(crawl_job_id=job_id).info("crawl_submitted")
        return await self._begin_polling(submitted)

    async def _begin_polling(self, accession: AccessionRead) -> AccessionRead:
        self._require(accession, AccessionStatus.SUBMITTED)
        now = self.clock()
        polling = self.repository.update_status(
            accession.id,
            AccessionStatus.SUBMITTED,
            AccessionStatus.POLLING,
            now=now,
            polling_started_at=now,
            next_attempt_at=None,
        )
        self._log(polling).info("crawl_polling_started")
        return polling

    async def poll(self, accession: AccessionRead) -> AccessionRead:
        """Check on the crawl job of a polling accession."""
        self._require(accession, AccessionStatus.POLLING)
        log = self._log(accession)

        # The window holds even when every status call blows up
        if self._poll_window_exceeded(accession):
            return self._time_out(accession, log)

        status = None
        transient_error: Optional[TransientExternalError] = None
        try:
            status = await self.crawl_client.get_status(accession.crawl_job_id)
        except TransientExternalError as e:
            # Counts as "still running": bounded by the poll window, not by attempts
            log.warning("crawl_status_transient_error", **e.to_dict())
            transient_error = e
        except PermanentExternalError as e:
            log.error("crawl_status_rejected", **e.to_dict())
            return self._fail(accession, f"{FailureReason.CRAWL_FAILED.value}: {e}")

        if status is not None and status.state is CrawlState.SUCCEEDED:
            fetching = self.repository.update_status(
                accession.id,
                AccessionStatus.POLLING,
                AccessionStatus.ARTIFACT_FETCHING,
                now=self.clock(),
                artifact_locator=status.locator,
                last_error=None,
                next_attempt_at=self._lease_until(),
            )
            log.info("crawl_succeeded", artifact_locator=status.locator)
            return await self.fetch_artifact(fetching)

        if status is not None and status.state is CrawlState.FAILED:
            log.error("crawl_failed", reason=status.reason)
            return self._fail(
                accession, f"{FailureReason.CRAWL_FAILED.value}: {status.reason}"
            )

        if self._poll_window_exceeded(accession):
            return self._time_out(accession, log)

        now = self.clock()
        started = accession.polling_started_at or now
        fields = {
            "next_attempt_at": now + self.poll_interval,
            "polling_started_at": started,
        }
        if transient_error is not None:
            fields["last_error"] = str(transient_error)
        still_polling = self.repository.update_status(
            accession.id,
            AccessionStatus.POLLING,
            AccessionStatus.POLLING,
            now=now,
            **fields,
        )
        log.debug("crawl_still_running", remote_state=status.remote_state if status else None)
        return still_polling

    def _poll_waited(self, accession: AccessionRead) -> timedelta:
        if accession.polling_started_at is None:
            return timedelta(0)
        return self.clock() - accession.polling_started_at

    def _poll_window_exceeded(self, accession: AccessionRead) -> bool:
        return self._poll_waited(accession) >= self.max_poll_wait

    def _time_out(self, accession: AccessionRead, log) -> AccessionRead:
        waited = self._poll_waited(accession).total_seconds()
        log.error("crawl_timed_out", waited_seconds=int(waited))
        return self._fail(accession, str(CrawlTimeoutError(accession.crawl_job_id, waited)))

    async def fetch_artifact(self, accession: AccessionRead) -> AccessionRead:
        """Download the crawl's artifact and hand it to ``store_artifact``.

        Also resumes ``storing_artifact`` rows: the artifact is not kept
        between passes, so it is fetched again by locator.
        """
        self._require(
            accession, AccessionStatus.ARTIFACT_FETCHING, AccessionStatus.STORING_ARTIFACT
        )
        log = self._log(accession)

        try:
            body = await self.crawl_client.fetch_artifact(accession.artifact_locator)
        except TransientExternalError as e:
            log.warning("artifact_fetch_transient_error", **e.to_dict())
            return self._retry_or_fail(accession, e, FailureReason.ARTIFACT_RETRIEVAL_FAILED)
        except PermanentExternalError as e:
            log.error("artifact_fetch_rejected", **e.to_dict())
            return self._fail(
                accession, f"{FailureReason.ARTIFACT_RETRIEVAL_FAILED.value}: {e}"
            )

        with body:
            body.seek(0, io.SEEK_END)
            size = body.tell()
            body.seek(0)
            if not size:
                log.error("artifact_empty", artifact_locator=accession.artifact_locator)
                return self._fail(
                    accession,
                    f"{FailureReason.ARTIFACT_RETRIEVAL_FAILED.value}: "
                    f"empty artifact at {accession.artifact_locator}",
                )

            log.info("artifact_fetched", size=size)
            return await self.store_artifact(accession, body)

    async def store_artifact(self, accession: AccessionRead, body: BinaryIO) -> AccessionRead:
        """Put the artifact under its deterministic key and complete the accession."""
        self._require(
            accession, AccessionStatus.ARTIFACT_FETCHING, AccessionStatus.STORING_ARTIFACT
        )
        if accession.status is AccessionStatus.ARTIFACT_FETCHING:
            accession = self.repository.update_status(
                accession.id,
                AccessionStatus.ARTIFACT_FETCHING,
                AccessionStatus.STORING_ARTIFACT,
                now=self.clock(),
                next_attempt_at=self._lease_until(),
            )
        log = self._log(accession)

        key = artifact_key(self.key_prefix, accession.id)
        try:
            reference = await self.artifact_store.put(key, body, self.content_type)
        except TransientExternalError as e:
            log.warning("artifact_store_transient_error", key=key, **e.to_dict())
            return self._retry_or_fail(accession, e, FailureReason.ARTIFACT_STORAGE_FAILED)
        except PermanentExternalError as e:
            log.error("artifact_store_rejected", key=key, **e.to_dict())
            return self._fail(
                accession, f"{FailureReason.ARTIFACT_STORAGE_FAILED.value}: {e}"
            )

        completed = self.repository.update_status(
            accession.id,
            AccessionStatus.STORING_ARTIFACT,
            AccessionStatus.COMPLETED,
            now=self.clock(),
            stored_artifact_reference=reference,
            last_error=None,
            next_attempt_at=None,
        )
        log.info("accession_completed", stored_artifact_reference=reference)
        return completed

    def _retry_or_fail(
        self,
        accession: AccessionRead,
        error: Exception,
        reason: FailureReason,
    ) -> AccessionRead:
        """Count a transient failure and either schedule a retry or give up."""
        attempts = accession.attempt_count + 1
        if attempts >= self.max_attempts:
            return self._fail(
                accession,
                f"{reason.value} after {attempts} attempts: {error}",
                increment_attempts=True,
            )

        now = self.clock()
        retry_at = now + self.retry_backoff
        updated = self.repository.update_status(
            accession.id,
            accession.status,
            accession.status,
            increment_attempts=True,
            now=now,
            last_error=str(error),
            next_attempt_at=retry_at,
        )
        self._log(accession).info(
            "accession_retry_scheduled",
            attempt_count=updated.attempt_count,
            next_attempt_at=retry_at.isoformat(),
        )
        return updated

    def _fail(
        self,
        accession: AccessionRead,
        message: str,
        increment_attempts: bool = False,
    ) -> AccessionRead:
        failed = self.repository.update_status(
            accession.id,
            accession.status,
            AccessionStatus.FAILED,
            increment_attempts=increment_attempts,
            now=self.clock(),
            last_error=message,
            next_attempt_at=None,
        )
        self._log(accession).error("accession_failed", error=message)
        return failed

    @staticmethod
    def _require(accession: AccessionRead, *statuses: AccessionStatus) -> None:
        if accession.status not in statuses:
            expected = ", ".join(s.value for s in statuses)
            raise InvalidTransitionError(
                f"Accession {accession.id} is {accession.status.value}, expected {expected}"
            )
