"""
Subject lookups used when validating new accessions.

Subjects are created and edited elsewhere; the ingestion core only needs to
know whether the ids an operator supplied exist.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from .models import SubjectModel


class SubjectDirectory(ABC):
    """Read-only view of the subject tags."""

    @abstractmethod
    def missing(self, subject_ids: Iterable[int], metadata_language: Optional[str] = None) -> List[int]:
        """Return the ids from ``subject_ids`` that do not exist."""
        pass


class SQLAlchemySubjectDirectory(SubjectDirectory):
    """Subject directory backed by the ``subjects`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def missing(self, subject_ids: Iterable[int], metadata_language: Optional[str] = None) -> List[int]:
        wanted = set(subject_ids)
        if not wanted:
            return []
        with self.session_factory() as db:
            query = db.query(SubjectModel.id).filter(SubjectModel.id.in_(wanted))
            if metadata_language:
                query = query.filter(SubjectModel.metadata_language == metadata_language)
            found = {row[0] for row in query.all()}
        return sorted(wanted - found)


class StaticSubjectDirectory(SubjectDirectory):
    """Fixed set of known subject ids (local runs and tests)."""

    def __init__(self, known_ids: Iterable[int] = ()):
        self.known_ids = set(known_ids)

    def missing(self, subject_ids: Iterable[int], metadata_language: Optional[str] = None) -> List[int]:
        return sorted(set(subject_ids) - self.known_ids)
