"""SQLAlchemy 2.0 ORM table definitions for the shared registry database.

Only the two tables the fleet tooling touches are mapped: the tenant
registry (read) and the append-only audit log (write).  Column names follow
the registry's existing camelCase schema.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Shared declarative base for the registry tables."""


class TenantTable(Base):
    """Tenant registry: placement and lifecycle of every tenant."""

    __tablename__ = "Tenant"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    dedicated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    datasource_url: Mapped[str | None] = mapped_column("datasourceUrl", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        "createdAt", DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_tenant_status_dedicated", "status", "dedicated"),)


class AuditLogTable(Base):
    """Append-only audit log with tamper-evidence via hash chaining.

    ``entry_hash`` is a SHA-256 digest of the entry's content fields plus the
    preceding entry's hash, so editing any row breaks the chain for every
    later row.
    """

    __tablename__ = "AuditLog"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    resource: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resource_id: Mapped[str | None] = mapped_column("resourceId", String(512), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    changes: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column("previousHash", String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column("entryHash", String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        "createdAt", DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_action_created", "action", "createdAt"),
        Index("ix_audit_resource", "resource", "resourceId"),
    )
