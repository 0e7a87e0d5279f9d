# ==============================
# Run Event Contracts
# ==============================
"""
Closed set of ledger lifecycle events.

Every event kind is a variant of RunEventKind; publishers cannot invent new kinds
and no kind is special-cased when nobody is listening.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RunEventKind(str, Enum):
    STEP_STARTED = "step_started"
    STEP_FINISHED = "step_finished"
    ARTIFACT_WRITTEN = "artifact_written"
    GATE_REQUIRED = "gate_required"
    GATE_SUBMITTED = "gate_submitted"
    RUN_RESUMED = "run_resumed"
    LOG = "log"
    ERROR = "error"


class RunEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: RunEventKind = Field(...)
    run_id: str = Field(...)
    at: str = Field(...)
    step: Optional[str] = Field(default=None)
    payload: Dict[str, Any] = Field(default_factory=dict)
