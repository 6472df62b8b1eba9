from __future__ import annotations

"""Artifact schemas.

CONTRACT
- Inputs: Pydantic models
- Outputs:
  - Validated JSON-serializable objects
- Invariants:
  - RunRecord is frozen; a re-run supersedes a record, never mutates it
  - DeploymentState.with_record() returns a new state
  - Steps without a record report status `pending`
  - All persisted documents carry a schema_version int field
- Failure:
  - Raises pydantic.ValidationError on schema mismatch
"""

import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def done(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="microseconds")


class RunRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: int = 1
    step_id: str
    status: StepStatus
    timestamp: str = Field(default_factory=utc_now_iso)
    attempts: int = 0
    exit_code: int | None = None
    output: str = ""
    message: str = ""
    run_id: str | None = None


class DeploymentState(BaseModel):
    """Latest RunRecord per step id."""

    model_config = ConfigDict(frozen=True)

    records: dict[str, RunRecord] = Field(default_factory=dict)

    def status_of(self, step_id: str) -> StepStatus:
        rec = self.records.get(step_id)
        return rec.status if rec else StepStatus.PENDING

    def get(self, step_id: str) -> RunRecord | None:
        return self.records.get(step_id)

    def with_record(self, record: RunRecord) -> DeploymentState:
        return DeploymentState(records={**self.records, record.step_id: record})

    def __len__(self) -> int:
        return len(self.records)


class RunStatus(BaseModel):
    schema_version: int = 1
    run_id: str
    status: Literal["RUNNING", "OK", "FAILED", "INVALID", "INTERRUPTED", "DRY_RUN"]
    message: str = ""
    failed_step: str | None = None
    executed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    resumed: list[str] = Field(default_factory=list)


class RunMeta(BaseModel):
    schema_version: int = 1
    run_id: str
    plan_file: str
    state_file: str
    fresh: bool = False
    dry_run: bool = False
    order: list[str] = Field(default_factory=list)
    retry: dict[str, Any] = Field(default_factory=dict)
