"""
Configuration management for the Accession Archiver.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./accession_archiver.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    # Browsertrix crawling service
    browsertrix_base_url: str = Field(default="http://localhost:30870/api")
    browsertrix_username: str = Field(default="")
    browsertrix_password: str = Field(default="")
    browsertrix_org_id: str = Field(default="")
    browsertrix_request_timeout: float = Field(default=30.0)

    # Artifact storage
    artifact_store_uri: str = Field(
        default="file://./artifacts",
        description="Where captured WACZ files are stored: s3://bucket/prefix, file:///path or memory://",
    )
    s3_endpoint_url: Optional[str] = Field(default=None)
    s3_region: str = Field(default="us-east-1")
    s3_access_key: Optional[str] = Field(default=None)
    s3_secret_key: Optional[str] = Field(default=None)
    artifact_key_prefix: str = Field(default="accessions")
    artifact_content_type: str = Field(default="application/wacz")
    presigned_url_expiry_seconds: int = Field(default=3600)

    # Ingestion pipeline
    max_attempts: int = Field(
        default=5,
        description="Failed external calls allowed per accession before it is marked failed",
    )
    retry_backoff_seconds: int = Field(default=60)
    poll_interval_seconds: int = Field(default=60)
    max_poll_wait_seconds: int = Field(default=1800)
    claim_lease_seconds: int = Field(default=600)

    # Scheduler
    scheduler_interval_seconds: int = Field(default=10)
    scheduler_batch_size: int = Field(default=100)
    max_concurrent_steps: int = Field(default=10)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
