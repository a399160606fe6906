"""
Accession service: the entry points an HTTP layer or the CLI needs.

Creating an accession only validates and persists it as pending; the
ingestion worker picks it up asynchronously.
"""

import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from ..db.repository import AccessionRepository
from ..db.subjects import SubjectDirectory
from ..errors import ArtifactNotFoundError, InvalidAccessionError, UnknownSubjectError
from ..lifecycle import AccessionStatus
from ..schemas.accession import AccessionCreate, AccessionFilter, AccessionPage, AccessionRead
from ..worker.storage import ArtifactStore, artifact_key

logger = logging.getLogger(__name__)


class AccessionService:
    """Façade over the repository for creating and reading accessions."""

    def __init__(
        self,
        repository: AccessionRepository,
        subjects: SubjectDirectory,
        artifact_store: Optional[ArtifactStore] = None,
        key_prefix: str = "accessions",
        default_url_expiry: int = 3600,
    ):
        self.repository = repository
        self.subjects = subjects
        self.artifact_store = artifact_store
        self.key_prefix = key_prefix
        self.default_url_expiry = default_url_expiry

    def create_accession(
        self,
        url: str,
        title: str,
        subject_ids: Iterable[int] = (),
        **metadata: Any,
    ) -> AccessionRead:
        """Validate and persist a new accession.

        Args:
            url: Web address to capture
            title: Operator-facing title
            subject_ids: Existing subject ids to tag the accession with
            **metadata: description, metadata_language, metadata_date,
                is_private, browser_profile

        Returns:
            The new accession, in status pending

        Raises:
            InvalidAccessionError: The input failed validation
            UnknownSubjectError: Some subject ids do not exist
        """
        try:
            draft = AccessionCreate(
                url=url,
                title=title,
                subject_ids=list(subject_ids),
                **metadata,
            )
        except ValidationError as e:
            raise InvalidAccessionError(f"Invalid accession: {e}") from e

        missing = self.subjects.missing(draft.subject_ids, draft.metadata_language)
        if missing:
            raise UnknownSubjectError(missing)

        accession = self.repository.create(draft)
        logger.info(f"Created accession {accession.id} for {accession.source_url}")
        return accession

    def get_accession(self, accession_id: str) -> AccessionRead:
        return self.repository.get_by_id(accession_id)

    def list_accessions(self, params: Optional[AccessionFilter] = None) -> AccessionPage:
        return self.repository.list(params)

    async def artifact_download_url(
        self, accession_id: str, expires_in: Optional[int] = None
    ) -> str:
        """Time-limited URL for a completed accession's stored WACZ.

        Raises:
            AccessionNotFoundError: No such accession
            ArtifactNotFoundError: The accession has no stored artifact
        """
        accession = self.repository.get_by_id(accession_id)
        key = artifact_key(self.key_prefix, accession.id)
        if accession.status is not AccessionStatus.COMPLETED or self.artifact_store is None:
            raise ArtifactNotFoundError(key)
        return await self.artifact_store.download_url(
            key, expires_in=expires_in or self.default_url_expiry
        )
