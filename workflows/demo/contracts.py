# ==============================
# Demo Workflow Artifacts
# ==============================
"""
Artifact schemas owned by the demo workflow.

- A_outline.json  -> OutlineArtifact
- B_draft.json    -> DraftOutput (also the structured output the drafter agent must return)
- final_report.json -> FinalReport
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class OutlineArtifact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    topic: str = Field(..., min_length=1)
    sections: List[str] = Field(..., min_length=1)


class DraftSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    heading: str = Field(..., min_length=1)
    body: str = Field(default="")


class DraftOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1)
    sections: List[DraftSection] = Field(..., min_length=1)


class FinalReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    topic: str
    title: str
    sections: List[DraftSection]
    fallback_used: bool = False
    generated_at: str
