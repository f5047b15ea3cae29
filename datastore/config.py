"""
Configuration and settings for the data access layer.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings, read once per process."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MARKETPLACE_",
        extra="ignore",
    )

    # Backend selection
    use_remote: bool = Field(
        default=False,
        validation_alias=AliasChoices("use_remote", "use-remote", "USE_REMOTE"),
    )

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Local embedded store (SQLite)
    local_data_dir: str = Field(default="data")
    local_database_url: Optional[str] = Field(default=None)
    strict_collections: bool = Field(default=False)

    # Realtime delivery when the remote is disabled
    poll_interval_seconds: float = Field(default=1.5, gt=0, le=60)

    # Re-check pushed-down Firestore results with the local evaluator
    verify_remote_filters: bool = Field(default=False)

    # Firebase / Firestore
    firebase_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("firebase_project_id", "FIREBASE_PROJECT_ID"),
    )
    google_application_credentials: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "google_application_credentials", "GOOGLE_APPLICATION_CREDENTIALS"
        ),
    )

    # S3-compatible blob storage for listing images
    s3_endpoint: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("s3_endpoint", "S3_ENDPOINT")
    )
    s3_region: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("s3_region", "S3_REGION")
    )
    s3_bucket: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("s3_bucket", "S3_BUCKET")
    )
    s3_public_base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("s3_public_base_url", "S3_PUBLIC_BASE_URL"),
    )
    aws_access_key_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("aws_access_key_id", "AWS_ACCESS_KEY_ID"),
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "aws_secret_access_key", "AWS_SECRET_ACCESS_KEY"
        ),
    )

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
