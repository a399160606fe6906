from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    constr,
    field_validator,
)

from ..lifecycle import AccessionStatus

MetadataLanguage = Literal["english", "arabic"]

_http_url = TypeAdapter(AnyHttpUrl)


class AccessionCreate(BaseModel):
    """
    Draft of a new accession, as submitted by an operator.

    There is no status field: every accession starts out pending, and any
    caller-supplied status is ignored.
    """

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "url": "https://example.org/page",
                "title": "Example page",
                "description": "Front page as of the election",
                "subject_ids": [1, 2],
                "metadata_language": "english",
                "is_private": False,
            }
        },
    )

    url: constr(strip_whitespace=True, min_length=1)
    title: constr(strip_whitespace=True, min_length=1, max_length=200)
    description: Optional[constr(strip_whitespace=True, max_length=2000)] = None
    subject_ids: List[int] = Field(default_factory=list, max_length=200)
    metadata_language: MetadataLanguage = "english"
    metadata_date: Optional[datetime] = None
    is_private: bool = False
    browser_profile: Optional[constr(min_length=1, max_length=100)] = None

    @field_validator("url")
    @classmethod
    def http_url(cls, value: str) -> str:
        """Require an http(s) URL but keep it exactly as submitted."""
        try:
            _http_url.validate_python(value)
        except ValidationError as e:
            raise ValueError(f"not a valid http(s) URL: {value!r}") from e
        return value

    @field_validator("description")
    @classmethod
    def blank_description_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @field_validator("subject_ids")
    @classmethod
    def unique_subject_ids(cls, value: List[int]) -> List[int]:
        """Drop duplicate subject ids, keeping first-seen order."""
        return list(dict.fromkeys(value))

    @property
    def source_url(self) -> str:
        return self.url


class AccessionRead(BaseModel):
    """Consistent snapshot of an accession row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    source_url: str
    title: str
    description: Optional[str] = None
    metadata_language: MetadataLanguage = "english"
    metadata_date: Optional[datetime] = None
    subject_ids: List[int] = Field(default_factory=list)
    is_private: bool = False
    browser_profile: Optional[str] = None

    status: AccessionStatus
    crawl_job_id: Optional[str] = None
    artifact_locator: Optional[str] = None
    stored_artifact_reference: Optional[str] = None
    last_error: Optional[str] = None
    attempt_count: int = 0

    polling_started_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class AccessionFilter(BaseModel):
    """Filtering and pagination for accession listings."""

    status: Optional[AccessionStatus] = None
    query_term: Optional[constr(strip_whitespace=True, min_length=1, max_length=500)] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    is_private: Optional[bool] = None
    page: int = Field(default=0, ge=0)
    per_page: int = Field(default=20, ge=1, le=200)


class AccessionPage(BaseModel):
    """One page of accessions."""

    items: List[AccessionRead]
    num_pages: int
    page: int
    per_page: int
    total: int
