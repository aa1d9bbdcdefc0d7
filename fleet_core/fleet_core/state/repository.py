"""Repositories over the shared registry database.

* :class:`TenantRepository` reads the tenant registry.  Selection is
  expressed entirely through bound parameters built from a parsed
  :class:`SelectionFilter`; no caller-provided text reaches the SQL.
* :class:`AuditRepository` appends hash-chained audit entries.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_core.models.tenant import SelectionFilter, TenantRecord, TenantStatus
from fleet_core.state.tables import AuditLogTable, TenantTable

logger = logging.getLogger(__name__)


class TenantRepository:
    """Read-only access to the tenant registry."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_tenants(
        self,
        selection: SelectionFilter,
        allow_list: Sequence[str] | None = None,
    ) -> list[TenantRecord]:
        """Return tenants matching *selection*, restricted to *allow_list* if given.

        Results are ordered by creation time, then id, which is the order
        dedicated endpoint groups are reported in.
        """
        stmt = select(TenantTable).where(TenantTable.status == selection.status.value)
        if selection.dedicated is not None:
            stmt = stmt.where(TenantTable.dedicated.is_(selection.dedicated))
        if allow_list is not None:
            stmt = stmt.where(TenantTable.id.in_(list(allow_list)))
        stmt = stmt.order_by(TenantTable.created_at, TenantTable.id)

        result = await self._session.execute(stmt)
        return [
            TenantRecord(
                id=row.id,
                status=TenantStatus(row.status),
                dedicated=row.dedicated,
                datasource_url=row.datasource_url,
            )
            for row in result.scalars().all()
        ]


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _compute_hash(
        actor: str,
        action: str,
        resource: str | None,
        resource_id: str | None,
        reason: str | None,
        changes: dict[str, Any] | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """Compute a SHA-256 digest over the entry's content fields.

        Fields are joined with ``|``; ``None`` is hashed as the empty string.
        """
        parts = [
            actor,
            action,
            resource or "",
            resource_id or "",
            reason or "",
            json.dumps(changes, sort_keys=True, default=str) if changes else "",
            previous_hash or "",
            created_at.isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        """Return the entry_hash of the most recent audit entry."""
        stmt = select(AuditLogTable.entry_hash).order_by(AuditLogTable.created_at.desc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str,
        action: str,
        resource: str | None = None,
        resource_id: str | None = None,
        reason: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> str:
        """Write an audit entry and return its ID."""
        entry_id = uuid.uuid4().hex
        now = datetime.now(UTC)

        # Serialise writers so two inserts cannot read the same previous_hash.
        bind = self._session.get_bind()
        dialect_name = getattr(getattr(bind, "dialect", None), "name", "")
        if "postgresql" in str(dialect_name):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": int(hashlib.sha256(b"audit_chain").hexdigest()[:8], 16) & 0x7FFFFFFF},
            )

        previous_hash = await self.get_latest_hash()
        entry_hash = self._compute_hash(
            actor=actor,
            action=action,
            resource=resource,
            resource_id=resource_id,
            reason=reason,
            changes=changes,
            previous_hash=previous_hash,
            created_at=now,
        )

        self._session.add(
            AuditLogTable(
                id=entry_id,
                actor=actor,
                action=action,
                resource=resource,
                resource_id=resource_id,
                reason=reason,
                changes=changes,
                previous_hash=previous_hash,
                entry_hash=entry_hash,
                created_at=now,
            )
        )
        await self._session.flush()
        return entry_id

    async def verify_chain(self) -> bool:
        """Recompute every entry hash in insertion order; False on any mismatch."""
        stmt = select(AuditLogTable).order_by(AuditLogTable.created_at.asc())
        result = await self._session.execute(stmt)
        previous: str | None = None
        for row in result.scalars().all():
            created_at = row.created_at if row.created_at.tzinfo else row.created_at.replace(tzinfo=UTC)
            expected = self._compute_hash(
                actor=row.actor,
                action=row.action,
                resource=row.resource,
                resource_id=row.resource_id,
                reason=row.reason,
                changes=row.changes,
                previous_hash=row.previous_hash,
                created_at=created_at,
            )
            if row.previous_hash != previous or row.entry_hash != expected:
                logger.warning("Audit chain broken at entry %s", row.id)
                return False
            previous = row.entry_hash
        return True
