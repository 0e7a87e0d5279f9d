# ==============================
# Run Contracts
# ==============================
"""
Run contracts for runledger/.

These models define the stable representation of a run, its step records, the
active gate state and the operation result envelope.

Intended usage:
- RunLedger owns RunRecord instances and persists them as run.json snapshots
- Step-sequence functions read RunRecord / StepRecord but never mutate them
- Gateway API returns RunRecord dumps and RunOperationResult envelopes
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ==============================
# Enums
# ==============================
class RunStatus(str, Enum):
    """Lifecycle status for a run."""
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    ERROR = "error"


class StepStatus(str, Enum):
    """Lifecycle status for a step."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class GateAwaiting(str, Enum):
    REVIEW_SUBMISSION = "review_submission"
    RESUME = "resume"
    CHANGES_REQUESTED = "changes_requested"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    REGENERATE = "regenerate"


# ==============================
# Models
# ==============================
class StepRecord(BaseModel):
    """Per-step state. Artifacts are append-only (no duplicates)."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Step name from the workflow step sequence.")
    status: StepStatus = Field(default=StepStatus.QUEUED)
    started_at: Optional[str] = Field(default=None)
    finished_at: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    artifacts: List[str] = Field(default_factory=list)


class DerivedFrom(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str = Field(..., description="Parent run id.")
    start_from: str = Field(..., description="Step the child run resumes at.")
    created_at: str = Field(...)


class RunGateState(BaseModel):
    """At most one active gate per run; cleared whenever status leaves paused."""
    model_config = ConfigDict(extra="forbid")

    gate_id: str = Field(...)
    resume_from: str = Field(..., description="Step the run re-enters at after approval.")
    message: str = Field(default="")
    awaiting: GateAwaiting = Field(default=GateAwaiting.REVIEW_SUBMISSION)
    requested_at: Optional[str] = Field(default=None)
    submitted_decision: Optional[ReviewDecision] = Field(default=None)
    submitted_at: Optional[str] = Field(default=None)
    review_artifact: Optional[str] = Field(default=None)


class RunRecord(BaseModel):
    """Top-level run snapshot persisted as run.json."""
    model_config = ConfigDict(extra="forbid")

    run_id: str = Field(...)
    topic: str = Field(...)
    settings: Dict[str, Any] = Field(default_factory=dict, description="Caller-defined run settings.")
    derived_from: Optional[DerivedFrom] = Field(default=None)
    status: RunStatus = Field(default=RunStatus.QUEUED)
    started_at: str = Field(...)
    finished_at: Optional[str] = Field(default=None)
    active_gate: Optional[RunGateState] = Field(default=None)
    step_order: List[str] = Field(default_factory=list)
    steps: Dict[str, StepRecord] = Field(default_factory=dict)
    output_folder: str = Field(...)
    superseded_by: Optional[str] = Field(default=None, description="Child run that replaced this run.")

    def step(self, name: str) -> StepRecord:
        rec = self.steps.get(name)
        if rec is None:
            raise KeyError(f"Unknown step '{name}' for run {self.run_id}")
        return rec


# ==============================
# Operation Envelope
# ==============================
class OperationError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(...)
    message: str = Field(...)
    details: Dict[str, Any] = Field(default_factory=dict)


class RunOperationResult(BaseModel):
    """Envelope returned by RunEngine operations (CLI/API friendly)."""
    model_config = ConfigDict(extra="forbid")

    ok: bool = Field(...)
    data: Optional[Dict[str, Any]] = Field(default=None)
    error: Optional[OperationError] = Field(default=None)

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None) -> "RunOperationResult":
        return cls(ok=True, data=data or {}, error=None)

    @classmethod
    def failure(
        cls,
        *,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "RunOperationResult":
        return cls(ok=False, data=None, error=OperationError(code=code, message=message, details=details or {}))
