"""Pydantic schemas for accession input and snapshots."""

from .accession import (
    AccessionCreate,
    AccessionFilter,
    AccessionPage,
    AccessionRead,
    MetadataLanguage,
)

__all__ = [
    "AccessionCreate",
    "AccessionFilter",
    "AccessionPage",
    "AccessionRead",
    "MetadataLanguage",
]
