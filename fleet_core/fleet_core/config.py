"""Fleet core configuration loaded from environment variables."""

from __future__ import annotations

import json
import logging
import shlex
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables with FLEET_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    debug: bool = False

    # Shared cluster.  ``DATABASE_URL`` is accepted for compatibility with the
    # migration tool, which reads the same variable.
    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("FLEET_DATABASE_URL", "DATABASE_URL"),
    )

    # Migration tool
    migration_command: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["alembic", "upgrade", "head"])
    migration_timeout_seconds: float = 600.0
    migration_max_attempts: int = 3
    migration_backoff_base: float = 2.0
    migration_backoff_max: float = 8.0

    # Endpoint normalisation
    connect_timeout_seconds: int = 5
    statement_timeout_ms: int = 60_000

    # Policy verification
    verify_timeout_seconds: float = 60.0
    tenant_column: str = "tenantId"
    policy_name_pattern: str = "tenant_isolation_%"
    global_tables: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["Tenant", "TenantDomain", "GlobalConfig"])

    # Circuit breaker
    breaker_open_alert_seconds: float = Field(
        default=60.0,
        gt=0.0,
        validation_alias=AliasChoices("FLEET_BREAKER_OPEN_ALERT_SECONDS", "BREAKER_OPEN_ALERT_SECONDS"),
    )

    # Audit
    audit_enabled: bool = True
    audit_actor: str = "fleet-migrate"

    @field_validator("migration_command", mode="before")
    @classmethod
    def split_command(cls, v: object) -> object:
        # Environment values arrive as a shell-style string or a JSON array.
        if isinstance(v, str):
            return json.loads(v) if v.lstrip().startswith("[") else shlex.split(v)
        return v

    @field_validator("global_tables", mode="before")
    @classmethod
    def split_tables(cls, v: object) -> object:
        if isinstance(v, str):
            if v.lstrip().startswith("["):
                return json.loads(v)
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def blank_url_is_unset(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings (audit_enabled=%s)", settings.audit_enabled)

    return settings
