"""JSON and CSV run reports.

A report path is normalised into two sibling artefacts: ``<base>.json``
(array of attempt rows) and ``<base>.csv``.  Passing ``report.json`` or
``report.csv`` yields the same pair.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path

from fleet_core.models.migration import AttemptRow

logger = logging.getLogger(__name__)

CSV_HEADER = "endpointFingerprint,tenantsCovered,status,durationMs,error"


def report_paths(path: Path | str) -> tuple[Path, Path]:
    """Return the ``(json_path, csv_path)`` pair for *path*."""
    path = Path(path)
    base = path.with_suffix("") if path.suffix.lower() in (".json", ".csv") else path
    return base.with_name(base.name + ".json"), base.with_name(base.name + ".csv")


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def row_to_csv(row: AttemptRow) -> str:
    """Render one row; tenants are pipe-joined and always quoted."""
    return ",".join(
        [
            row.endpoint_fingerprint,
            _quote("|".join(row.tenants_covered)),
            row.status.value,
            str(row.duration_ms),
            _quote(row.error) if row.error else "",
        ]
    )


def write_report(rows: Sequence[AttemptRow], path: Path | str) -> tuple[Path, Path]:
    """Write *rows* as JSON and CSV next to *path* and return both paths."""
    json_path, csv_path = report_paths(path)
    json_path.parent.mkdir(parents=True, exist_ok=True)

    payload = [row.model_dump(mode="json", by_alias=True) for row in rows]
    json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    csv_path.write_text("\n".join([CSV_HEADER, *(row_to_csv(row) for row in rows)]), encoding="utf-8")

    logger.info("Wrote report (%d row(s)) to %s and %s", len(rows), json_path, csv_path)
    return json_path, csv_path
