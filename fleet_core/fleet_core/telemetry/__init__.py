"""Redaction and logging utilities."""

from fleet_core.telemetry.logging import JSONFormatter, configure_logging
from fleet_core.telemetry.redaction import (
    REDACTED,
    fingerprint,
    redact,
    redact_error_message,
    redact_mapping_keys,
)

__all__ = [
    "JSONFormatter",
    "REDACTED",
    "configure_logging",
    "fingerprint",
    "redact",
    "redact_error_message",
    "redact_mapping_keys",
]
