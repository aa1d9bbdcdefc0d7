"""Tenant registry records and the tenant selection filter."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TenantStatus(str, Enum):
    """Lifecycle state of a tenant in the registry."""

    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"


class TenantRecord(BaseModel):
    """A tenant as read from the shared registry.

    Non-dedicated tenants live on the shared cluster.  Dedicated tenants
    declare their own ``datasource_url``; several dedicated tenants may point
    at the same database.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    status: TenantStatus = TenantStatus.ACTIVE
    dedicated: bool = False
    datasource_url: str | None = None


class SelectionFilter(BaseModel):
    """Parsed, restricted predicate over the tenant registry.

    Only built by :func:`fleet_core.filters.parse_where_clause`; free-form
    predicate text never reaches the registry query.
    """

    model_config = ConfigDict(frozen=True)

    status: TenantStatus = TenantStatus.ACTIVE
    dedicated: bool | None = None

    def matches(self, tenant: TenantRecord) -> bool:
        if tenant.status != self.status:
            return False
        return self.dedicated is None or tenant.dedicated == self.dedicated
