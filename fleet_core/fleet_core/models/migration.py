"""Migration run models: endpoint groups, waves, attempt rows and flags.

``EndpointGroup`` and ``Wave`` are derived in memory for a single run.
``AttemptRow`` is the unit of reporting -- exactly one per endpoint group
per run, ``skipped`` for groups a halted run never reached -- and serialises with camelCase keys for the JSON/CSV report.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fleet_core.models.tenant import SelectionFilter


class AttemptStatus(str, Enum):
    """Outcome of one endpoint group within a run."""

    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class EndpointGroup(BaseModel):
    """A connection endpoint and the tenants it serves, in registry order."""

    endpoint: str = Field(..., min_length=1)
    tenant_ids: list[str] = Field(default_factory=list)
    is_shared: bool = False


class Wave(BaseModel):
    """A contiguous, 1-indexed slice of endpoint groups."""

    index: int = Field(..., ge=1)
    groups: list[EndpointGroup] = Field(default_factory=list)


class AttemptRow(BaseModel):
    """Report row for one endpoint group attempt.

    The endpoint itself is never stored, only its one-way fingerprint.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    endpoint_fingerprint: str
    tenants_covered: list[str] = Field(default_factory=list)
    status: AttemptStatus
    duration_ms: int = Field(default=0, ge=0)
    error: str | None = None


class MigrationFlags(BaseModel):
    """Options controlling one orchestrator run."""

    dry_run: bool = False
    stop_on_failure: bool = True
    selection: SelectionFilter = Field(default_factory=SelectionFilter)
    tenant_allow_list: list[str] | None = None
    report_path: Path | None = None
    wave_size: int | None = Field(
        default=None,
        description="Endpoint groups per wave; None (or <= 0) means a single wave.",
    )
    promote: bool = False


class MigrationRunResult(BaseModel):
    """Outcome of :meth:`MigrationOrchestrator.run`."""

    rows: list[AttemptRow] = Field(default_factory=list)
    had_failure: bool = False
    halted: bool = False
    waves_total: int = 0
    waves_completed: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.had_failure else 0
