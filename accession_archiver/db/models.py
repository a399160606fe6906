"""
SQLAlchemy models for the Accession Archiver.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)

from ..lifecycle import AccessionStatus, utcnow
from .base import Base


class AccessionModel(Base):
    """An archived (or to-be-archived) piece of web content."""

    __tablename__ = "accessions"

    # Primary fields
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source_url = Column(Text, nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Descriptive metadata
    metadata_language = Column(
        Enum("english", "arabic", name="metadata_language"),
        nullable=False,
        default="english",
    )
    metadata_date = Column(DateTime, nullable=True)
    subject_ids = Column(JSON, nullable=False, default=list)
    is_private = Column(Boolean, nullable=False, default=False)
    browser_profile = Column(String(100), nullable=True)

    # Lifecycle
    status = Column(
        Enum(*[s.value for s in AccessionStatus], name="accession_status"),
        nullable=False,
        default=AccessionStatus.PENDING.value,
        index=True,
    )
    crawl_job_id = Column(String(100), nullable=True, index=True)
    artifact_locator = Column(String(255), nullable=True)
    stored_artifact_reference = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)

    # Scheduling
    polling_started_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)

    # Timestamps (naive UTC)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_accessions_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_accessions_created_at", "created_at"),
    )


class SubjectModel(Base):
    """Subject tag. Managed outside the ingestion core; read here for validation."""

    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    label = Column(String(100), nullable=False)
    metadata_language = Column(
        Enum("english", "arabic", name="metadata_language"),
        nullable=False,
        default="english",
    )
