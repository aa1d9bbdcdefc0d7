"""Shared registry persistence: engine, tables and repositories."""

from fleet_core.state.database import dispose_engine, get_engine, get_session
from fleet_core.state.repository import AuditRepository, TenantRepository
from fleet_core.state.tables import AuditLogTable, Base, TenantTable

__all__ = [
    "AuditLogTable",
    "AuditRepository",
    "Base",
    "TenantRepository",
    "TenantTable",
    "dispose_engine",
    "get_engine",
    "get_session",
]
