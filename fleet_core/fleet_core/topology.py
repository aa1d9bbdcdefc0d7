"""Partition a tenant fleet into migration targets by connection endpoint.

The shared cluster serves every non-dedicated tenant and is always the first
group, even when no selected tenant lives on it -- its schema is still
migrated and verified.  Dedicated tenants are grouped by the literal
endpoint string they declare, so tenants co-hosted on one dedicated
database are migrated once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from fleet_core.config import Settings
from fleet_core.errors import ConfigError
from fleet_core.models.migration import EndpointGroup, Wave
from fleet_core.models.tenant import SelectionFilter, TenantRecord

logger = logging.getLogger(__name__)


def require_shared_endpoint(settings: Settings) -> str:
    """Return the shared cluster endpoint or raise :class:`ConfigError`."""
    if not settings.database_url:
        raise ConfigError(
            "DATABASE_URL is required: set it (or FLEET_DATABASE_URL) to the shared cluster endpoint"
        )
    return settings.database_url


def select_tenants(
    tenants: Iterable[TenantRecord],
    selection: SelectionFilter,
    allow_list: Sequence[str] | None = None,
) -> list[TenantRecord]:
    """Apply *selection* and intersect with *allow_list*, keeping input order."""
    allowed = set(allow_list) if allow_list is not None else None
    return [t for t in tenants if selection.matches(t) and (allowed is None or t.id in allowed)]


def resolve_topology(
    tenants: Iterable[TenantRecord],
    selection: SelectionFilter,
    shared_endpoint: str,
    allow_list: Sequence[str] | None = None,
) -> list[EndpointGroup]:
    """Group the selected tenants by endpoint.

    Returns the shared group first, then one group per distinct dedicated
    endpoint in the order the endpoint is first seen in *tenants*.  A
    dedicated tenant that declares the shared endpoint literally is folded
    into the shared group.
    """
    if not shared_endpoint:
        raise ConfigError("A shared cluster endpoint is required to resolve topology")

    groups: dict[str, EndpointGroup] = {
        shared_endpoint: EndpointGroup(endpoint=shared_endpoint, is_shared=True),
    }
    for tenant in select_tenants(tenants, selection, allow_list):
        if not tenant.dedicated:
            groups[shared_endpoint].tenant_ids.append(tenant.id)
            continue
        if not tenant.datasource_url:
            logger.warning("Dedicated tenant %s has no datasource endpoint; skipping", tenant.id)
            continue
        group = groups.get(tenant.datasource_url)
        if group is None:
            group = EndpointGroup(endpoint=tenant.datasource_url)
            groups[tenant.datasource_url] = group
        group.tenant_ids.append(tenant.id)

    resolved = list(groups.values())
    logger.info(
        "Resolved %d endpoint group(s): shared covers %d tenant(s), %d dedicated endpoint(s)",
        len(resolved),
        len(resolved[0].tenant_ids),
        len(resolved) - 1,
    )
    return resolved


def slice_waves(groups: Sequence[EndpointGroup], wave_size: int | None = None) -> list[Wave]:
    """Split *groups* into consecutive waves of at most *wave_size* groups.

    ``None`` or a non-positive size yields a single wave holding everything.
    """
    if not groups:
        return []
    size = wave_size if wave_size and wave_size > 0 else len(groups)
    return [
        Wave(index=number, groups=list(groups[start : start + size]))
        for number, start in enumerate(range(0, len(groups), size), start=1)
    ]
