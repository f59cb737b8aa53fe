"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``SACHAIN_`` prefix; AWS / infrastructure settings use
their canonical environment variable names via ``validation_alias``.

Components never read :data:`settings` directly: entry points derive the
explicit config objects (``RetryConfig``, ``RepositoryConfig``) from it and
inject those into constructors.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the Sachain compliance data layer.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``SACHAIN_``; AWS / infra keys
    use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="SACHAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Key-value store ────────────────────────────────────────────────
    table_name: str = "sachain-kyc"
    store_backend: Literal["memory", "dynamodb"] = "memory"
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    dynamodb_endpoint_url: str | None = Field(default=None, validation_alias="DYNAMODB_ENDPOINT_URL")

    # ── Retry / backoff (seconds) ──────────────────────────────────────
    retry_max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.1, gt=0)
    retry_max_delay: float = Field(default=5.0, gt=0)
    retry_jitter: Literal["full", "none", "equal"] = "full"

    # ── Batching ───────────────────────────────────────────────────────
    batch_write_size: int = Field(default=25, ge=1, le=25)
    batch_get_size: int = Field(default=100, ge=1, le=100)
    retention_batch_limit: int = 100
    erasure_batch_limit: int = 100
    audit_stats_limit: int = 1000
    export_max_items: int = 1000
    deletion_batch_size: int = 10

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION


# Module-level instance for process entry points (see ``sachain.bootstrap``).
settings = Settings()
