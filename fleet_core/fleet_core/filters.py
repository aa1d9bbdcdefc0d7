"""Parser for the restricted ``--where`` tenant selection grammar.

Accepted input, case-insensitive on keywords and values::

    status='active'|'pending'|'suspended' [AND dedicated=true|false]

Anything else is rejected with :class:`FilterSyntaxError`.  The result is a
:class:`SelectionFilter` that the registry query binds as parameters, so the
text supplied on the command line never becomes SQL.
"""

from __future__ import annotations

import re

from fleet_core.errors import FilterSyntaxError
from fleet_core.models.tenant import SelectionFilter, TenantStatus

_WHERE_RE = re.compile(
    r"^\s*status\s*=\s*'(active|pending|suspended)'\s*(?:AND\s+dedicated\s*=\s*(true|false))?\s*$",
    re.IGNORECASE,
)

_ALLOWED = "status='active|pending|suspended' [AND dedicated=true|false]"

# Tenant IDs on the allow-list share the registry's identifier alphabet.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")


def parse_where_clause(text: str | None) -> SelectionFilter:
    """Parse *text* into a :class:`SelectionFilter`.

    ``None`` or an empty string selects active tenants.
    """
    if text is None or not text.strip():
        return SelectionFilter(status=TenantStatus.ACTIVE)

    match = _WHERE_RE.match(text)
    if match is None:
        raise FilterSyntaxError(f"Invalid --where. Allowed: {_ALLOWED}")

    status = TenantStatus(match.group(1).lower())
    dedicated = match.group(2).lower() == "true" if match.group(2) else None
    return SelectionFilter(status=status, dedicated=dedicated)


def parse_tenant_list(text: str | None) -> list[str] | None:
    """Split a comma-separated tenant allow-list, validating each ID.

    Returns ``None`` when no list was given so callers can tell "no
    restriction" apart from "restricted to nothing".
    """
    if text is None:
        return None
    ids: list[str] = []
    for raw in text.split(","):
        tenant_id = raw.strip()
        if not tenant_id:
            continue
        if not _TENANT_ID_RE.match(tenant_id):
            raise FilterSyntaxError(f"Invalid tenant id in --tenants: {tenant_id!r}")
        if tenant_id not in ids:
            ids.append(tenant_id)
    return ids
