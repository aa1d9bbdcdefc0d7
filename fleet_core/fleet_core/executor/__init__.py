"""Migration execution: endpoint normalisation, tool adapters and retry."""

from __future__ import annotations

from fleet_core.executor.endpoint import normalize_endpoint, to_async_engine_args
from fleet_core.executor.migration_tool import MigrationTool, SubprocessMigrationTool
from fleet_core.executor.retry import RetryConfig, async_retry_with_backoff

__all__ = [
    "MigrationTool",
    "RetryConfig",
    "SubprocessMigrationTool",
    "async_retry_with_backoff",
    "normalize_endpoint",
    "to_async_engine_args",
]
