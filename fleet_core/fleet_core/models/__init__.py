"""Domain models for the fleet migration core."""

from fleet_core.models.migration import (
    AttemptRow,
    AttemptStatus,
    EndpointGroup,
    MigrationFlags,
    MigrationRunResult,
    Wave,
)
from fleet_core.models.tenant import SelectionFilter, TenantRecord, TenantStatus

__all__ = [
    "AttemptRow",
    "AttemptStatus",
    "EndpointGroup",
    "MigrationFlags",
    "MigrationRunResult",
    "SelectionFilter",
    "TenantRecord",
    "TenantStatus",
    "Wave",
]
