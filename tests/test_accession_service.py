"""Tests for the accession service façade."""

import pytest

from accession_archiver.db.models import SubjectModel
from accession_archiver.db.subjects import SQLAlchemySubjectDirectory, StaticSubjectDirectory
from accession_archiver.errors import (
    AccessionNotFoundError,
    ArtifactNotFoundError,
    InvalidAccessionError,
    UnknownSubjectError,
)
from accession_archiver.lifecycle import AccessionStatus
from accession_archiver.schemas.accession import AccessionFilter
from accession_archiver.services.accessions import AccessionService


@pytest.fixture
def service(repository, store):
    return AccessionService(
        repository,
        StaticSubjectDirectory({1, 2, 3}),
        artifact_store=store,
        key_prefix="accessions",
    )


class TestCreateAccession:
    """Validation and persistence of new accessions."""

    def test_create_returns_pending(self, service):
        accession = service.create_accession("https://example.org/page", "Example page", [])

        assert accession.status == AccessionStatus.PENDING
        assert accession.stored_artifact_reference is None
        assert accession.crawl_job_id is None
        assert accession.source_url == "https://example.org/page"
        assert service.get_accession(accession.id) == accession

    def test_metadata_is_stored(self, service):
        accession = service.create_accession(
            "https://example.org/page",
            "  Election night  ",
            [2, 1, 2],
            description="  Front page  ",
            metadata_language="arabic",
            is_private=True,
            browser_profile="profile-7",
        )

        assert accession.title == "Election night"
        assert accession.description == "Front page"
        assert accession.subject_ids == [2, 1]
        assert accession.metadata_language == "arabic"
        assert accession.is_private is True
        assert accession.browser_profile == "profile-7"

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.org",
            "https://Example.ORG/Path?q=a%20b",
            "http://bücher.example/seite",
        ],
    )
    def test_url_is_stored_as_submitted(self, service, url):
        accession = service.create_accession(f"  {url} ", "Title")

        assert accession.source_url == url

    def test_blank_description_becomes_none(self, service):
        accession = service.create_accession("https://example.org", "Title", description="   ")

        assert accession.description is None

    @pytest.mark.parametrize(
        "url,title",
        [
            ("", "Title"),
            ("not a url", "Title"),
            ("ftp://example.org/file", "Title"),
            ("https://example.org", ""),
            ("https://example.org", "   "),
            ("https://example.org", "x" * 201),
        ],
    )
    def test_invalid_input(self, service, url, title):
        with pytest.raises(InvalidAccessionError):
            service.create_accession(url, title)

    def test_description_too_long(self, service):
        with pytest.raises(InvalidAccessionError):
            service.create_accession("https://example.org", "Title", description="x" * 2001)

    def test_too_many_subjects(self, repository):
        service = AccessionService(repository, StaticSubjectDirectory(range(500)))

        with pytest.raises(InvalidAccessionError):
            service.create_accession("https://example.org", "Title", list(range(201)))

    def test_unknown_subjects(self, service, repository):
        with pytest.raises(UnknownSubjectError) as exc_info:
            service.create_accession("https://example.org", "Title", [1, 9, 7])

        assert exc_info.value.subject_ids == [7, 9]
        assert repository.list().total == 0

    def test_unknown_subject_is_an_invalid_accession(self, service):
        with pytest.raises(InvalidAccessionError):
            service.create_accession("https://example.org", "Title", [42])


class TestSubjectDirectory:
    def test_sqlalchemy_directory(self, session_factory):
        with session_factory() as db:
            db.add_all(
                [
                    SubjectModel(id=1, label="Elections", metadata_language="english"),
                    SubjectModel(id=2, label="انتخابات", metadata_language="arabic"),
                ]
            )
            db.commit()
        directory = SQLAlchemySubjectDirectory(session_factory)

        assert directory.missing([1, 2, 3]) == [3]
        assert directory.missing([1, 2], metadata_language="english") == [2]
        assert directory.missing([]) == []


class TestReads:
    def test_get_missing(self, service):
        with pytest.raises(AccessionNotFoundError):
            service.get_accession("missing")

    def test_list_accessions(self, service):
        for i in range(3):
            service.create_accession(f"https://example.org/{i}", f"Page {i}")

        page = service.list_accessions(AccessionFilter(per_page=2))

        assert page.total == 3
        assert len(page.items) == 2
        assert service.list_accessions().total == 3


class TestArtifactDownloadUrl:
    @pytest.mark.asyncio
    async def test_completed_accession(self, service, orchestrator):
        accession = service.create_accession("https://example.org/page", "Example page")
        await orchestrator.advance(accession.id)
        await orchestrator.advance(accession.id)

        url = await service.artifact_download_url(accession.id)

        assert url == f"memory://accessions/{accession.id}.wacz"

    @pytest.mark.asyncio
    async def test_pending_accession_has_no_artifact(self, service):
        accession = service.create_accession("https://example.org/page", "Example page")

        with pytest.raises(ArtifactNotFoundError):
            await service.artifact_download_url(accession.id)

    @pytest.mark.asyncio
    async def test_missing_accession(self, service):
        with pytest.raises(AccessionNotFoundError):
            await service.artifact_download_url("missing")
