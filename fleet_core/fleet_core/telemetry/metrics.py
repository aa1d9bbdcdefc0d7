"""Prometheus metrics for circuit-breaker transitions.

Every breaker transition increments a counter labelled by provider and a
hashed tenant id, and ``fleet_breaker_open_state`` tracks whether the
breaker is currently open (1) or not (0).  Tenant ids are hashed so raw
identifiers never reach the metrics backend.

Breaker keys have the form ``provider[:tenant[:scope]]``; the scope part
is not exported as a label to keep cardinality bounded.
"""

from __future__ import annotations

import hashlib

from prometheus_client import Counter, Gauge

BREAKER_OPEN_TOTAL = Counter(
    "fleet_breaker_open_total",
    "Circuit breaker transitions to OPEN by provider and tenant",
    ["provider", "tenant"],
)

BREAKER_HALF_OPEN_TOTAL = Counter(
    "fleet_breaker_half_open_total",
    "Circuit breaker transitions to HALF_OPEN by provider and tenant",
    ["provider", "tenant"],
)

BREAKER_CLOSE_TOTAL = Counter(
    "fleet_breaker_close_total",
    "Circuit breaker recoveries to CLOSED by provider and tenant",
    ["provider", "tenant"],
)

BREAKER_STILL_OPEN_TOTAL = Counter(
    "fleet_breaker_still_open_total",
    "Alert-window ticks during which a circuit breaker remained OPEN",
    ["provider", "tenant"],
)

BREAKER_OPEN_STATE = Gauge(
    "fleet_breaker_open_state",
    "Circuit breaker currently open (1) or not (0)",
    ["provider", "tenant"],
)


def hash_tenant_id(tenant_id: str) -> str:
    """Return an 8-character one-way label for *tenant_id*."""
    return hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:8]


def breaker_labels(key: str) -> dict[str, str]:
    """Split a breaker key into ``provider`` and hashed ``tenant`` labels."""
    parts = key.split(":")
    tenant = parts[1] if len(parts) > 1 and parts[1] else None
    return {"provider": parts[0], "tenant": hash_tenant_id(tenant) if tenant else "none"}


def record_breaker_transition(kind: str, key: str) -> None:
    """Update counters and the open gauge for a breaker transition."""
    labels = breaker_labels(key)
    if kind == "open":
        BREAKER_OPEN_TOTAL.labels(**labels).inc()
        BREAKER_OPEN_STATE.labels(**labels).set(1)
    elif kind == "half_open":
        BREAKER_HALF_OPEN_TOTAL.labels(**labels).inc()
        BREAKER_OPEN_STATE.labels(**labels).set(0)
    elif kind == "close":
        BREAKER_CLOSE_TOTAL.labels(**labels).inc()
        BREAKER_OPEN_STATE.labels(**labels).set(0)


def record_breaker_still_open(key: str) -> None:
    BREAKER_STILL_OPEN_TOTAL.labels(**breaker_labels(key)).inc()
