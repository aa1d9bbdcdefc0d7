"""Fleet-wide schema rollout with post-migration RLS verification.

A run resolves the tenant topology once, slices endpoint groups into waves
and processes every group strictly sequentially:

1. normalise the endpoint (connect and statement timeouts);
2. apply migrations through the :class:`MigrationTool`, with bounded retries
   -- skipped on dry runs;
3. verify tenant-isolation policies on the endpoint -- also on dry runs,
   since verification only reads the catalog and is how policy drift on an
   untouched endpoint is detected;
4. record one :class:`AttemptRow` and one audit event.

A failed group stops the run immediately when ``stop_on_failure`` is set;
otherwise the rest of the wave drains and no further wave starts.  Groups
left unattempted either way are reported as ``skipped`` rows (without an
audit event), so the report always has one row per endpoint group.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncEngine

from fleet_core.audit import AuditAction, AuditEvent, AuditReason, AuditService, DatabaseAuditSink
from fleet_core.checks.policy_verifier import PolicyReport, PolicyVerifier
from fleet_core.config import Settings
from fleet_core.errors import MigrationToolError, PolicyVerificationError
from fleet_core.executor.endpoint import normalize_endpoint
from fleet_core.executor.migration_tool import MigrationTool, SubprocessMigrationTool
from fleet_core.executor.retry import RetryConfig, async_retry_with_backoff
from fleet_core.models.migration import (
    AttemptRow,
    AttemptStatus,
    EndpointGroup,
    MigrationFlags,
    MigrationRunResult,
)
from fleet_core.models.tenant import SelectionFilter, TenantRecord
from fleet_core.reporting import write_report
from fleet_core.state.database import dispose_engine, get_engine, get_session
from fleet_core.state.repository import TenantRepository
from fleet_core.telemetry.redaction import fingerprint, redact_error_message
from fleet_core.topology import require_shared_endpoint, resolve_topology, slice_waves

logger = logging.getLogger(__name__)


class TenantSource(Protocol):
    """Where the tenant registry is read from."""

    async def list_tenants(
        self,
        selection: SelectionFilter,
        allow_list: Sequence[str] | None = None,
    ) -> list[TenantRecord]: ...

    async def aclose(self) -> None: ...


class EndpointVerifier(Protocol):
    async def verify(self, endpoint: str) -> PolicyReport: ...


class RegistryTenantSource:
    """:class:`TenantSource` over the shared registry database."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def list_tenants(
        self,
        selection: SelectionFilter,
        allow_list: Sequence[str] | None = None,
    ) -> list[TenantRecord]:
        async with get_session(self._engine) as session:
            return await TenantRepository(session).list_tenants(selection, allow_list)

    async def aclose(self) -> None:
        await dispose_engine(self._engine)


class MigrationOrchestrator:
    """Drive migrations and verification across every endpoint group.

    Parameters
    ----------
    settings:
        Loaded :class:`Settings`; the shared endpoint is read from here.
    tenant_source:
        Registry reader, closed at the end of every run.
    migration_tool:
        Engine that applies schema changes to one endpoint.
    verifier:
        Post-migration policy verifier.
    audit:
        Audit service receiving one event per attempted group.
    retry:
        Backoff policy for the migration tool.  Defaults to the settings'
        attempt count and 2s..8s exponential backoff.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tenant_source: TenantSource,
        migration_tool: MigrationTool,
        verifier: EndpointVerifier,
        audit: AuditService,
        retry: RetryConfig | None = None,
    ) -> None:
        self._settings = settings
        self._tenants = tenant_source
        self._tool = migration_tool
        self._verifier = verifier
        self._audit = audit
        self._retry = retry or RetryConfig.from_attempts(
            settings.migration_max_attempts,
            base_delay=settings.migration_backoff_base,
            max_delay=settings.migration_backoff_max,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> MigrationOrchestrator:
        """Wire the production collaborators: registry, subprocess tool, Postgres verifier."""
        shared = require_shared_endpoint(settings)
        engine = get_engine(
            shared,
            connect_timeout=settings.connect_timeout_seconds,
            statement_timeout_ms=settings.statement_timeout_ms,
        )
        sink = DatabaseAuditSink(lambda: get_session(engine)) if settings.audit_enabled else None
        return cls(
            settings,
            tenant_source=RegistryTenantSource(engine),
            migration_tool=SubprocessMigrationTool(
                settings.migration_command,
                timeout=settings.migration_timeout_seconds,
                connect_timeout=settings.connect_timeout_seconds,
            ),
            verifier=PolicyVerifier(
                timeout=settings.verify_timeout_seconds,
                tenant_column=settings.tenant_column,
                policy_pattern=settings.policy_name_pattern,
                excluded_tables=settings.global_tables,
            ),
            audit=AuditService(sink, actor=settings.audit_actor),
        )

    # -- helpers ---------------------------------------------------------------

    def _normalize(self, endpoint: str) -> str:
        return normalize_endpoint(
            endpoint,
            connect_timeout=self._settings.connect_timeout_seconds,
            statement_timeout_ms=self._settings.statement_timeout_ms,
        )

    async def _resolve(
        self,
        shared: str,
        selection: SelectionFilter,
        allow_list: Sequence[str] | None,
    ) -> list[EndpointGroup]:
        tenants = await self._tenants.list_tenants(selection, allow_list)
        return resolve_topology(tenants, selection, shared, allow_list)

    async def _apply(self, endpoint: str) -> None:
        await async_retry_with_backoff(
            lambda: self._tool.apply_migrations(endpoint),
            self._retry,
            retryable_exceptions=(MigrationToolError,),
        )

    async def _process_group(self, group: EndpointGroup, wave: int, dry_run: bool) -> AttemptRow:
        endpoint = self._normalize(group.endpoint)
        endpoint_fp = fingerprint(endpoint)
        start = time.monotonic()
        error: str | None = None

        try:
            if not dry_run:
                await self._apply(endpoint)
            await self._verifier.verify(endpoint)
        except Exception as exc:
            error = redact_error_message(exc)
            logger.error("Endpoint %s (wave %d) failed: %s", endpoint_fp, wave, error)

        duration_ms = int((time.monotonic() - start) * 1000)
        row = AttemptRow(
            endpoint_fingerprint=endpoint_fp,
            tenants_covered=list(group.tenant_ids),
            status=AttemptStatus.FAILED if error else AttemptStatus.OK,
            duration_ms=duration_ms,
            error=error,
        )
        await self._audit.log_migration(
            endpoint_fingerprint=endpoint_fp,
            tenants_covered=row.tenants_covered,
            wave=wave,
            duration_ms=duration_ms,
            error=error,
        )
        if error is None:
            logger.info(
                "Endpoint %s (wave %d) %s in %dms covering %d tenant(s)",
                endpoint_fp,
                wave,
                "verified" if dry_run else "migrated and verified",
                duration_ms,
                len(row.tenants_covered),
            )
        return row

    def _skip(self, result: MigrationRunResult, groups: Sequence[EndpointGroup]) -> None:
        for group in groups:
            result.rows.append(
                AttemptRow(
                    endpoint_fingerprint=fingerprint(self._normalize(group.endpoint)),
                    tenants_covered=list(group.tenant_ids),
                    status=AttemptStatus.SKIPPED,
                )
            )
        if groups:
            logger.warning("Skipped %d endpoint group(s) not attempted in this run", len(groups))

    def _flush(self, result: MigrationRunResult, report_path: Path | None) -> None:
        if report_path is not None:
            write_report(result.rows, report_path)

    # -- public API --------------------------------------------------------------

    async def run(self, flags: MigrationFlags) -> MigrationRunResult:
        """Execute one rollout.

        Raises :class:`ConfigError` before touching any endpoint when the
        shared endpoint is not configured.  Per-endpoint failures never
        raise; they are reported in the returned result.
        """
        shared = require_shared_endpoint(self._settings)
        result = MigrationRunResult()
        try:
            groups = await self._resolve(shared, flags.selection, flags.tenant_allow_list)
            waves = slice_waves(groups, flags.wave_size)
            result.waves_total = len(waves)
            logger.info(
                "Starting %s over %d endpoint group(s) in %d wave(s)",
                "dry run" if flags.dry_run else "migration",
                len(groups),
                len(waves),
            )

            attempted = 0
            for wave in waves:
                wave_failed = False
                for group in wave.groups:
                    row = await self._process_group(group, wave.index, flags.dry_run)
                    attempted += 1
                    result.rows.append(row)
                    if row.status is not AttemptStatus.FAILED:
                        continue
                    wave_failed = True
                    result.had_failure = True
                    if flags.stop_on_failure:
                        result.halted = True
                        logger.error("Migration halted due to failure in wave %d", wave.index)
                        self._skip(result, groups[attempted:])
                        return result

                result.waves_completed += 1
                if wave_failed:
                    logger.error("Wave %d finished with failures; not advancing to later waves", wave.index)
                    self._skip(result, groups[attempted:])
                    break
                if flags.promote:
                    # CI gates progression on this line.
                    logger.info("Wave %d complete -> promoting to next wave", wave.index)
        finally:
            self._flush(result, flags.report_path)
            await self._tenants.aclose()

        return result

    async def audit_policies(
        self,
        selection: SelectionFilter,
        allow_list: Sequence[str] | None = None,
        report_path: Path | None = None,
    ) -> MigrationRunResult:
        """Verify RLS on every resolved endpoint without migrating anything.

        Never stops early; each failing endpoint is logged as
        ``rls_audit_failed`` and audited as ``rls.audit_failed``.
        """
        shared = require_shared_endpoint(self._settings)
        result = MigrationRunResult(waves_total=1)
        try:
            for group in await self._resolve(shared, selection, allow_list):
                endpoint = self._normalize(group.endpoint)
                endpoint_fp = fingerprint(endpoint)
                start = time.monotonic()
                error: str | None = None
                changes: dict[str, object] = {"tenantsCovered": list(group.tenant_ids)}
                try:
                    await self._verifier.verify(endpoint)
                except Exception as exc:
                    error = redact_error_message(exc)
                    if isinstance(exc, PolicyVerificationError):
                        changes.update(missingRls=exc.missing_rls, missingPolicy=exc.missing_policy)
                    changes["error"] = error
                    logger.error(
                        "rls_audit_failed endpoint=%s error=%s",
                        endpoint_fp,
                        error,
                        extra={"context": {"endpoint": endpoint_fp, **changes}},
                    )
                    await self._audit.log(
                        AuditEvent(
                            action=AuditAction.RLS_AUDIT_FAILED,
                            resource_id=endpoint_fp,
                            reason=AuditReason.AUDIT,
                            changes=changes,
                        )
                    )
                    result.had_failure = True

                result.rows.append(
                    AttemptRow(
                        endpoint_fingerprint=endpoint_fp,
                        tenants_covered=list(group.tenant_ids),
                        status=AttemptStatus.FAILED if error else AttemptStatus.OK,
                        duration_ms=int((time.monotonic() - start) * 1000),
                        error=error,
                    )
                )
            result.waves_completed = 1
        finally:
            self._flush(result, report_path)
            await self._tenants.aclose()
        return result
