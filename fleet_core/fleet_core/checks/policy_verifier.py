"""Post-migration verification of tenant-isolation row-level security.

After a schema rollout every tenant-scoped table must still have RLS enabled
and carry a ``tenant_isolation_*`` policy.  Verification reads the live
security catalog, so it also catches drift introduced outside a migration.

The checks are split in two layers:

* :class:`PolicyCatalog` -- the four catalog reads, implemented for
  PostgreSQL by :class:`PostgresPolicyCatalog` with bound parameters only;
* :func:`verify_catalog` -- the decision logic, which aggregates every
  offending table into a single :class:`PolicyVerificationError` instead of
  stopping at the first one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from fleet_core.errors import PolicyMissingError, PolicyVerificationError
from fleet_core.executor.endpoint import to_async_engine_args

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_TABLES: tuple[str, ...] = ("Tenant", "TenantDomain", "GlobalConfig")
DEFAULT_TENANT_COLUMN = "tenantId"
DEFAULT_POLICY_PATTERN = "tenant_isolation_%"


@dataclass(frozen=True)
class PolicyReport:
    """Result of a successful verification."""

    policy_count: int
    scoped_tables: list[str] = field(default_factory=list)


class PolicyCatalog(Protocol):
    """Read-only view of a database's row-level security catalog."""

    async def count_isolation_policies(self) -> int: ...

    async def scoped_tables(self, excluded: Sequence[str]) -> list[str]: ...

    async def rls_enabled(self, table: str) -> bool: ...

    async def table_policy_count(self, table: str) -> int: ...


class PostgresPolicyCatalog:
    """:class:`PolicyCatalog` backed by ``pg_policies`` and ``pg_class``."""

    _COUNT_POLICIES = text(
        """
        SELECT count(*)::int
        FROM pg_policies
        WHERE schemaname = current_schema()
          AND policyname ILIKE :pattern
        """
    )

    _SCOPED_TABLES = text(
        """
        SELECT ic.table_name
        FROM information_schema.columns ic
        JOIN information_schema.tables it
          ON it.table_schema = ic.table_schema AND it.table_name = ic.table_name
        WHERE ic.table_schema = current_schema()
          AND ic.column_name = :column
          AND it.table_type = 'BASE TABLE'
          AND ic.table_name NOT IN :excluded
        ORDER BY 1
        """
    ).bindparams(bindparam("excluded", expanding=True))

    _RLS_ENABLED = text(
        """
        SELECT c.relrowsecurity
        FROM pg_class c
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = current_schema()
          AND c.relname = :table
        """
    )

    _TABLE_POLICIES = text(
        """
        SELECT count(*)::int
        FROM pg_policies
        WHERE schemaname = current_schema()
          AND tablename = :table
          AND policyname ILIKE :pattern
        """
    )

    def __init__(
        self,
        conn: AsyncConnection,
        *,
        tenant_column: str = DEFAULT_TENANT_COLUMN,
        policy_pattern: str = DEFAULT_POLICY_PATTERN,
    ) -> None:
        self._conn = conn
        self._tenant_column = tenant_column
        self._policy_pattern = policy_pattern

    async def count_isolation_policies(self) -> int:
        result = await self._conn.execute(self._COUNT_POLICIES, {"pattern": self._policy_pattern})
        return int(result.scalar() or 0)

    async def scoped_tables(self, excluded: Sequence[str]) -> list[str]:
        # An empty IN () list is not valid SQL; exclude an impossible name instead.
        params = {"column": self._tenant_column, "excluded": list(excluded) or [""]}
        result = await self._conn.execute(self._SCOPED_TABLES, params)
        return [str(name) for name in result.scalars().all()]

    async def rls_enabled(self, table: str) -> bool:
        result = await self._conn.execute(self._RLS_ENABLED, {"table": table})
        return bool(result.scalar())

    async def table_policy_count(self, table: str) -> int:
        result = await self._conn.execute(
            self._TABLE_POLICIES,
            {"table": table, "pattern": self._policy_pattern},
        )
        return int(result.scalar() or 0)


async def verify_catalog(
    catalog: PolicyCatalog,
    excluded: Sequence[str] = DEFAULT_GLOBAL_TABLES,
) -> PolicyReport:
    """Check that every tenant-scoped table is protected by RLS.

    Raises
    ------
    PolicyMissingError
        No tenant-isolation policy exists in the schema at all.
    PolicyVerificationError
        At least one scoped table has RLS disabled or no isolation policy;
        the error lists every such table.
    """
    policy_count = await catalog.count_isolation_policies()
    if policy_count <= 0:
        raise PolicyMissingError("RLS policies missing (no tenant_isolation_* policies found)")

    tables = await catalog.scoped_tables(excluded)
    missing_rls: list[str] = []
    missing_policy: list[str] = []
    for table in tables:
        if not await catalog.rls_enabled(table):
            missing_rls.append(table)
        if await catalog.table_policy_count(table) <= 0:
            missing_policy.append(table)

    if missing_rls or missing_policy:
        raise PolicyVerificationError(missing_rls, missing_policy)

    logger.debug("RLS verified on %d scoped table(s)", len(tables))
    return PolicyReport(policy_count=policy_count, scoped_tables=tables)


class PolicyVerifier:
    """Verify one endpoint over a short-lived, unpooled connection.

    Each call opens its own engine and disposes it on every exit path, so no
    connection outlives the verification of its endpoint.
    """

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        tenant_column: str = DEFAULT_TENANT_COLUMN,
        policy_pattern: str = DEFAULT_POLICY_PATTERN,
        excluded_tables: Sequence[str] = DEFAULT_GLOBAL_TABLES,
    ) -> None:
        self._timeout = timeout
        self._tenant_column = tenant_column
        self._policy_pattern = policy_pattern
        self._excluded = tuple(excluded_tables)

    async def verify(self, endpoint: str) -> PolicyReport:
        engine_url, connect_args = to_async_engine_args(endpoint)
        engine = create_async_engine(engine_url, poolclass=NullPool, connect_args=connect_args)
        try:
            return await asyncio.wait_for(self._verify_with(engine), timeout=self._timeout)
        finally:
            await engine.dispose()

    async def _verify_with(self, engine: AsyncEngine) -> PolicyReport:
        async with engine.connect() as conn:
            catalog = PostgresPolicyCatalog(
                conn,
                tenant_column=self._tenant_column,
                policy_pattern=self._policy_pattern,
            )
            return await verify_catalog(catalog, self._excluded)
