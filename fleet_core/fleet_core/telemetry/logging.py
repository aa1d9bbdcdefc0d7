"""Logging configuration for the fleet tooling.

Two output modes are supported:

* plain text (default) -- ``LEVEL logger: message`` lines on stderr;
* structured JSON -- one object per line, for log shippers.  Enable with
  ``FLEET_STRUCTURED_LOGGING=true`` or the CLI ``--log-json`` flag.

Output schema per JSON line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "ERROR",
        "logger": "fleet_core.resilience.circuit_breaker",
        "message": "breaker_still_open",
        "context": {"key": "stripe:t1", ...},   // present when passed via extra
        "exc_info": "Traceback ..."             // present only on exceptions
    }

Every message and traceback is redacted before it is written.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from fleet_core.telemetry.redaction import redact

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }

        # Structured context passed via ``extra={"context": {...}}``.
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = redact(context)

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = redact("".join(traceback.format_exception(*record.exc_info)))

        return json.dumps(payload, default=str, ensure_ascii=False)


class RedactingFormatter(logging.Formatter):
    """Plain-text formatter that masks credentials in the rendered line."""

    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


def configure_logging(structured: bool = False, level: int = logging.INFO) -> None:
    """Install a single stderr handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(RedactingFormatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
