"""Audit trail for fleet migration runs.

Every endpoint-group attempt produces exactly one audit event.  Events are
redacted twice before they leave the process: values under credential-like
keys are masked, then every string is scrubbed of connection secrets.  The
event is always logged (``audit.log``) and, when a registry database is
configured, appended to the hash-chained ``AuditLog`` table.  A failure to
persist is logged and never aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_core.state.repository import AuditRepository
from fleet_core.telemetry.redaction import redact, redact_mapping_keys

logger = logging.getLogger(__name__)


class AuditAction:
    """Well-known audit action identifiers."""

    MIGRATION_RUN = "migration.run"
    RLS_AUDIT_FAILED = "rls.audit_failed"


class AuditReason:
    SUCCESS = "success"
    FAILED = "failed"
    AUDIT = "audit"


class AuditEvent(BaseModel):
    """A single structured audit record."""

    action: str
    resource: str = "database"
    resource_id: str | None = None
    reason: str | None = None
    actor: str = "system"
    changes: dict[str, Any] = Field(default_factory=dict)


class AuditSink(Protocol):
    async def write(self, event: AuditEvent) -> None: ...


class InMemoryAuditSink:
    """Collects events in a list; used for dry runs and tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)


class DatabaseAuditSink:
    """Appends events to the hash-chained audit table, one transaction each."""

    def __init__(self, session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]]) -> None:
        self._session_scope = session_scope

    async def write(self, event: AuditEvent) -> None:
        async with self._session_scope() as session:
            await AuditRepository(session).log(
                actor=event.actor,
                action=event.action,
                resource=event.resource,
                resource_id=event.resource_id,
                reason=event.reason,
                changes=event.changes,
            )


class AuditService:
    """Redacts, logs and persists audit events.

    Parameters
    ----------
    sink:
        Durable destination.  ``None`` logs only.
    actor:
        Identity recorded on every event.
    """

    def __init__(self, sink: AuditSink | None = None, *, actor: str = "system") -> None:
        self._sink = sink
        self._actor = actor

    async def log(self, event: AuditEvent) -> AuditEvent:
        sanitized = AuditEvent.model_validate(redact(redact_mapping_keys(event.model_dump())))
        if sanitized.actor == "system":
            sanitized.actor = self._actor
        logger.info(
            "audit.log action=%s resource=%s/%s reason=%s",
            sanitized.action,
            sanitized.resource,
            sanitized.resource_id or "-",
            sanitized.reason or "-",
            extra={"context": sanitized.model_dump()},
        )
        if self._sink is not None:
            try:
                await self._sink.write(sanitized)
            except Exception:
                logger.exception("Failed to persist audit entry %s", sanitized.action)
        return sanitized

    async def log_migration(
        self,
        *,
        endpoint_fingerprint: str,
        tenants_covered: list[str],
        wave: int,
        duration_ms: int,
        error: str | None = None,
    ) -> AuditEvent:
        """Record the outcome of one endpoint-group migration attempt."""
        return await self.log(
            AuditEvent(
                action=AuditAction.MIGRATION_RUN,
                resource="database",
                resource_id=endpoint_fingerprint,
                reason=AuditReason.FAILED if error else AuditReason.SUCCESS,
                changes={
                    "tenantsCovered": list(tenants_covered),
                    "wave": wave,
                    "durationMs": duration_ms,
                    "error": error,
                },
            )
        )
