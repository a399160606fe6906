"""
Database package for the Accession Archiver.
"""

from .base import (
    Base,
    get_engine,
    get_session_local,
    init_database,
)
from .models import AccessionModel, SubjectModel
from .repository import AccessionRepository
from .subjects import SQLAlchemySubjectDirectory, StaticSubjectDirectory, SubjectDirectory

__all__ = [
    "Base",
    "get_engine",
    "get_session_local",
    "init_database",
    "AccessionModel",
    "SubjectModel",
    "AccessionRepository",
    "SubjectDirectory",
    "SQLAlchemySubjectDirectory",
    "StaticSubjectDirectory",
]
