"""Exception hierarchy for the fleet migration and resilience core.

Pre-flight errors (:class:`ConfigError`, :class:`FilterSyntaxError`) abort a
run before any endpoint is touched.  Per-endpoint errors
(:class:`MigrationToolError`, :class:`PolicyError` and subclasses) are
recorded against a single endpoint group; whether they also stop the run is
decided by the orchestrator's ``stop_on_failure`` flag.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all errors raised by ``fleet_core``."""


class ConfigError(FleetError):
    """A required piece of environment configuration is missing or invalid."""


class FilterSyntaxError(FleetError, ValueError):
    """A ``--where`` selection filter does not match the fixed grammar."""


class MigrationToolError(FleetError):
    """The external schema-migration tool failed after all retries."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class PolicyError(FleetError):
    """Base class for tenant-isolation policy verification failures."""


class PolicyMissingError(PolicyError):
    """No tenant-isolation policy exists anywhere in the schema."""


class PolicyVerificationError(PolicyError):
    """One or more tenant-scoped tables lack RLS or an isolation policy."""

    def __init__(self, missing_rls: list[str], missing_policy: list[str]) -> None:
        self.missing_rls = list(missing_rls)
        self.missing_policy = list(missing_policy)
        parts: list[str] = []
        if self.missing_rls:
            parts.append(f"RLS disabled: [{', '.join(self.missing_rls)}]")
        if self.missing_policy:
            parts.append(f"Policy missing: [{', '.join(self.missing_policy)}]")
        super().__init__(f"RLS verification failed -> {' | '.join(parts)}")


class CircuitOpenError(FleetError):
    """The circuit breaker for *key* rejected a call without executing it."""

    def __init__(self, key: str, retry_after: float = 0.0) -> None:
        super().__init__(f"Circuit breaker open for {key!r} (retry in {retry_after:.2f}s)")
        self.key = key
        self.retry_after = retry_after


class BreakerTimeoutError(FleetError, TimeoutError):
    """A breaker-wrapped operation exceeded its deadline."""

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Timeout after {timeout:.3f}s calling {key!r}")
        self.key = key
        self.timeout = timeout
