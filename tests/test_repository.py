"""Tests for the accession repository and its conditional writes."""

from datetime import timedelta

import pytest

from accession_archiver.db.models import AccessionModel
from accession_archiver.errors import (
    AccessionNotFoundError,
    ConflictError,
    InvalidTransitionError,
    InvariantViolationError,
)
from accession_archiver.lifecycle import AccessionStatus, RESUMABLE_STATUSES
from accession_archiver.schemas.accession import AccessionCreate, AccessionFilter


def advance_to_storing(repository, accession_id, now):
    repository.update_status(
        accession_id, AccessionStatus.PENDING, AccessionStatus.SUBMITTED,
        now=now, crawl_job_id="job-1",
    )
    repository.update_status(
        accession_id, AccessionStatus.SUBMITTED, AccessionStatus.POLLING,
        now=now, polling_started_at=now,
    )
    repository.update_status(
        accession_id, AccessionStatus.POLLING, AccessionStatus.ARTIFACT_FETCHING,
        now=now, artifact_locator="loc-1",
    )
    return repository.update_status(
        accession_id, AccessionStatus.ARTIFACT_FETCHING, AccessionStatus.STORING_ARTIFACT,
        now=now,
    )


class TestCreate:
    """Creating accessions."""

    def test_create_is_pending(self, repository, clock):
        draft = AccessionCreate(url="https://example.org/page", title="Example page")

        accession = repository.create(draft, now=clock())

        assert accession.status == AccessionStatus.PENDING
        assert accession.crawl_job_id is None
        assert accession.stored_artifact_reference is None
        assert accession.attempt_count == 0
        assert accession.subject_ids == []
        assert accession.created_at == clock.now
        assert len(accession.id) == 36

    def test_caller_status_is_ignored(self, repository):
        """A status in the draft payload never reaches the row."""
        draft = AccessionCreate.model_validate(
            {
                "url": "https://example.org/page",
                "title": "Example",
                "status": "completed",
                "stored_artifact_reference": "s3://bucket/key",
            }
        )

        accession = repository.create(draft)

        assert accession.status == AccessionStatus.PENDING
        assert accession.stored_artifact_reference is None

    def test_get_by_id(self, repository, make_accession):
        accession = make_accession(subject_ids=[3, 1, 3])

        fetched = repository.get_by_id(accession.id)

        assert fetched == accession
        assert fetched.subject_ids == [3, 1]

    def test_get_missing_raises(self, repository):
        with pytest.raises(AccessionNotFoundError):
            repository.get_by_id("missing")


class TestUpdateStatus:
    """Conditional status writes."""

    def test_update_sets_fields(self, repository, make_accession, clock):
        accession = make_accession()

        updated = repository.update_status(
            accession.id,
            AccessionStatus.PENDING,
            AccessionStatus.SUBMITTED,
            now=clock(),
            crawl_job_id="job-1",
        )

        assert updated.status == AccessionStatus.SUBMITTED
        assert updated.crawl_job_id == "job-1"
        assert repository.get_by_id(accession.id) == updated

    def test_wrong_expected_status_conflicts(self, repository, make_accession):
        accession = make_accession()

        with pytest.raises(ConflictError) as exc_info:
            repository.update_status(
                accession.id,
                AccessionStatus.POLLING,
                AccessionStatus.ARTIFACT_FETCHING,
                artifact_locator="loc-1",
            )

        assert exc_info.value.actual_status == "pending"
        assert repository.get_by_id(accession.id).status == AccessionStatus.PENDING

    def test_only_one_of_two_racing_writes_wins(self, repository, make_accession):
        """Both writers saw pending; only the first write applies."""
        accession = make_accession()

        repository.update_status(
            accession.id, AccessionStatus.PENDING, AccessionStatus.SUBMITTED, crawl_job_id="job-1"
        )
        with pytest.raises(ConflictError):
            repository.update_status(
                accession.id, AccessionStatus.PENDING, AccessionStatus.SUBMITTED, crawl_job_id="job-2"
            )

        assert repository.get_by_id(accession.id).crawl_job_id == "job-1"

    def test_missing_accession(self, repository):
        with pytest.raises(AccessionNotFoundError):
            repository.update_status(
                "missing", AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
            )

    def test_disallowed_transition(self, repository, make_accession):
        accession = make_accession()

        with pytest.raises(InvalidTransitionError):
            repository.update_status(accession.id, AccessionStatus.PENDING, AccessionStatus.COMPLETED)

    def test_terminal_statuses_are_final(self, repository, make_accession):
        accession = make_accession()
        repository.update_status(
            accession.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="rejected"
        )

        with pytest.raises(InvalidTransitionError):
            repository.update_status(accession.id, AccessionStatus.FAILED, AccessionStatus.PENDING)

    def test_invariant_violation_is_rolled_back(self, repository, make_accession):
        """Submitted without a job id never becomes visible."""
        accession = make_accession()

        with pytest.raises(InvariantViolationError):
            repository.update_status(accession.id, AccessionStatus.PENDING, AccessionStatus.SUBMITTED)

        assert repository.get_by_id(accession.id).status == AccessionStatus.PENDING

    def test_completed_requires_reference(self, repository, make_accession, clock):
        accession = make_accession()
        advance_to_storing(repository, accession.id, clock())

        with pytest.raises(InvariantViolationError):
            repository.update_status(
                accession.id, AccessionStatus.STORING_ARTIFACT, AccessionStatus.COMPLETED
            )

        completed = repository.update_status(
            accession.id,
            AccessionStatus.STORING_ARTIFACT,
            AccessionStatus.COMPLETED,
            stored_artifact_reference="s3://bucket/accessions/x.wacz",
        )
        assert completed.status == AccessionStatus.COMPLETED

    def test_reference_only_on_completed(self, repository, make_accession, clock):
        accession = make_accession()
        advance_to_storing(repository, accession.id, clock())

        with pytest.raises(InvariantViolationError):
            repository.update_status(
                accession.id,
                AccessionStatus.STORING_ARTIFACT,
                AccessionStatus.STORING_ARTIFACT,
                stored_artifact_reference="s3://bucket/partial",
            )

        assert repository.get_by_id(accession.id).stored_artifact_reference is None

    def test_failed_may_keep_null_job_id(self, repository, make_accession):
        accession = make_accession()

        failed = repository.update_status(
            accession.id,
            AccessionStatus.PENDING,
            AccessionStatus.FAILED,
            increment_attempts=True,
            last_error="crawl submission rejected: invalid url",
        )

        assert failed.crawl_job_id is None
        assert failed.attempt_count == 1

    def test_increment_attempts(self, repository, make_accession):
        accession = make_accession()

        for expected in (1, 2, 3):
            updated = repository.update_status(
                accession.id,
                AccessionStatus.PENDING,
                AccessionStatus.PENDING,
                increment_attempts=True,
                last_error="503",
            )
            assert updated.attempt_count == expected

    def test_unknown_field_rejected(self, repository, make_accession):
        accession = make_accession()

        with pytest.raises(ValueError):
            repository.update_status(
                accession.id, AccessionStatus.PENDING, AccessionStatus.PENDING, title="changed"
            )


class TestClaim:
    """Claim leases."""

    def test_claim_sets_lease(self, repository, make_accession, clock):
        accession = make_accession()
        lease = clock() + timedelta(minutes=10)

        claimed = repository.claim(accession.id, AccessionStatus.PENDING, clock(), lease)

        assert claimed.next_attempt_at == lease
        assert claimed.status == AccessionStatus.PENDING

    def test_second_claim_conflicts_until_lease_expires(self, repository, make_accession, clock):
        accession = make_accession()
        lease = clock() + timedelta(minutes=10)
        repository.claim(accession.id, AccessionStatus.PENDING, clock(), lease)

        with pytest.raises(ConflictError):
            repository.claim(accession.id, AccessionStatus.PENDING, clock(), lease)

        clock.advance(600)
        reclaimed = repository.claim(
            accession.id, AccessionStatus.PENDING, clock(), clock() + timedelta(minutes=10)
        )
        assert reclaimed.next_attempt_at == clock.now + timedelta(minutes=10)

    def test_claim_wrong_status(self, repository, make_accession, clock):
        accession = make_accession()

        with pytest.raises(ConflictError):
            repository.claim(accession.id, AccessionStatus.POLLING, clock(), clock())


class TestQueries:
    """Listing and counting."""

    def test_list_due(self, repository, make_accession, clock):
        due = make_accession(title="due")
        clock.advance(1)
        later = make_accession(title="later")
        clock.advance(1)
        done = make_accession(title="failed")
        repository.update_status(
            later.id, AccessionStatus.PENDING, AccessionStatus.PENDING,
            next_attempt_at=clock() + timedelta(minutes=5),
        )
        repository.update_status(
            done.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
        )

        ids = [a.id for a in repository.list_due(RESUMABLE_STATUSES, clock())]
        assert ids == [due.id]

        clock.advance(300)
        ids = [a.id for a in repository.list_due(RESUMABLE_STATUSES, clock())]
        assert ids == [due.id, later.id]

    def test_list_due_limit(self, repository, make_accession, clock):
        for i in range(5):
            make_accession(title=f"accession {i}")
            clock.advance(1)

        assert len(repository.list_due(RESUMABLE_STATUSES, clock(), limit=2)) == 2

    def test_list_by_status(self, repository, make_accession):
        first = make_accession()
        second = make_accession()
        repository.update_status(
            second.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
        )

        assert [a.id for a in repository.list_by_status(AccessionStatus.PENDING)] == [first.id]
        assert [a.id for a in repository.list_by_status(AccessionStatus.FAILED)] == [second.id]

    def test_list_filters_and_paginates(self, repository, make_accession, clock):
        for i in range(5):
            make_accession(url=f"https://example.org/{i}", title=f"Election page {i}")
            clock.advance(60)
        make_accession(url="https://news.example.com", title="News", description="Election night")
        make_accession(title="Private", is_private=True)

        page = repository.list(AccessionFilter(query_term="election", per_page=2))
        assert page.total == 6
        assert page.num_pages == 3
        assert len(page.items) == 2
        # Newest first
        assert page.items[0].title == "News"

        last = repository.list(AccessionFilter(query_term="election", per_page=2, page=2))
        assert [a.title for a in last.items] == ["Election page 1", "Election page 0"]

        private = repository.list(AccessionFilter(is_private=True))
        assert [a.title for a in private.items] == ["Private"]

        ranged = repository.list(AccessionFilter(date_to=clock.now - timedelta(seconds=150)))
        assert ranged.total == 3

    def test_search_term_wildcards_are_literal(self, repository, make_accession):
        make_accession(title="100% turnout")
        make_accession(title="1000 turnout")
        make_accession(title="snake_case")
        make_accession(title="snakeXcase")

        percent = repository.list(AccessionFilter(query_term="100%"))
        underscore = repository.list(AccessionFilter(query_term="snake_"))

        assert [a.title for a in percent.items] == ["100% turnout"]
        assert [a.title for a in underscore.items] == ["snake_case"]

    def test_list_by_status_filter(self, repository, make_accession):
        make_accession()
        failed = make_accession()
        repository.update_status(
            failed.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
        )

        page = repository.list(AccessionFilter(status=AccessionStatus.FAILED))

        assert [a.id for a in page.items] == [failed.id]

    def test_count_by_status(self, repository, make_accession):
        make_accession()
        make_accession()
        failed = make_accession()
        repository.update_status(
            failed.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
        )

        counts = repository.count_by_status()

        assert counts["pending"] == 2
        assert counts["failed"] == 1
        assert counts["completed"] == 0
        assert set(counts) == {s.value for s in AccessionStatus}

    def test_rows_are_never_deleted(self, repository, make_accession, session_factory):
        accession = make_accession()
        repository.update_status(
            accession.id, AccessionStatus.PENDING, AccessionStatus.FAILED, last_error="x"
        )

        with session_factory() as db:
            assert db.query(AccessionModel).count() == 1
