# ==============================
# Human Review Contracts
# ==============================
"""
Gate requirement descriptors and the per-run human review store.

The store is persisted as intermediate/human_review.json:
- history: append-only, never truncated
- latest_by_gate: last-write-wins per gate id (every known gate pre-populated with None)
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from runledger.contracts.run_schema import ReviewDecision

HUMAN_REVIEW_ARTIFACT = "human_review.json"
REVIEW_SCHEMA_VERSION = "1.0.0"
MAX_NOTES_CHARS = 10_000


class ChangeSeverity(str, Enum):
    MUST = "must"
    SHOULD = "should"
    COULD = "could"


class RequestedChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1, description="Artifact-relative pointer the change applies to.")
    instruction: str = Field(..., min_length=1)
    severity: ChangeSeverity = Field(default=ChangeSeverity.SHOULD)


class HumanReviewEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    gate_id: str = Field(...)
    status: ReviewDecision = Field(...)
    notes: str = Field(default="", max_length=MAX_NOTES_CHARS)
    requested_changes: List[RequestedChange] = Field(default_factory=list)
    submitted_at: str = Field(...)


class HumanReviewStore(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: str = Field(default=REVIEW_SCHEMA_VERSION)
    latest_by_gate: Dict[str, Optional[HumanReviewEntry]] = Field(default_factory=dict)
    history: List[HumanReviewEntry] = Field(default_factory=list)


class GateRequirement(BaseModel):
    """Descriptor written as <GATE_ID>_REQUIRED.json when a step asks for review."""
    model_config = ConfigDict(extra="forbid")

    gate_id: str = Field(...)
    workflow: str = Field(default="")
    status: str = Field(default="review_required")
    message: str = Field(...)
    next_action: str = Field(default="")
    resume_from: str = Field(...)


def gate_requirement_artifact_name(gate_id: str) -> str:
    return f"{gate_id}_REQUIRED.json"
