# ==============================
# Demo Workflow: A -> GATE_A_REVIEW -> B -> C
# ==============================
"""
Step-sequence function for the demo workflow.

Steps:
- A: deterministic outline from the topic (A_outline.json)
- GATE_A_REVIEW: human review of the outline; approval resumes at B,
  regenerate derives a new run starting at A
- B: structured draft from the drafter agent over the agent channel
  (B_draft.json); strict/warn adherence decides whether a failed call
  fails the step or falls back to a deterministic draft
- C: final_report.json + final_report.md

Run-level settings honored (RunRecord.settings):
- sections: list of outline section names
- drafter: agent key for step B
- adherence_mode: strict | warn
- max_turns: turn budget for step B
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from runledger.agents.fallback import with_fallback
from runledger.agents.validation import model_path
from runledger.contracts.outcome import Completed, Outcome
from runledger.contracts.review_schema import HUMAN_REVIEW_ARTIFACT, HumanReviewStore
from runledger.contracts.run_schema import RunRecord
from runledger.contracts.worker_schema import WorkerRequest, new_request_id
from runledger.orchestrator.context import PipelineContext
from runledger.orchestrator.gates import GateSpec
from runledger.orchestrator.workflow import WorkflowDef, WorkflowServices
from runledger.utils.naming import now_iso
from workflows.demo.agents import DRAFTER_KEY, SECTION_MARKER, TITLE_MARKER, register_agents
from workflows.demo.contracts import DraftOutput, DraftSection, FinalReport, OutlineArtifact

STEP_ORDER = ["A", "B", "C"]
GATE_A_REVIEW = "GATE_A_REVIEW"
GATES = [GateSpec(gate_id=GATE_A_REVIEW, step="A", resume_from="B")]

OUTLINE_ARTIFACT = "A_outline.json"
DRAFT_ARTIFACT = "B_draft.json"
FINAL_JSON = "final_report.json"
FINAL_MD = "final_report.md"

DEFAULT_SECTIONS = ["Background", "Findings", "Next steps"]


# ==============================
# Prompt Building
# ==============================
def build_draft_prompt(outline: OutlineArtifact, reviewer_notes: str = "") -> str:
    lines = [
        "Write a short report as JSON matching the DraftOutput schema.",
        f"{TITLE_MARKER}{outline.topic}",
        "SECTIONS:",
    ]
    lines.extend(f"{SECTION_MARKER}{s}" for s in outline.sections)
    if reviewer_notes:
        lines.append(f"REVIEWER NOTES: {reviewer_notes}")
    return "\n".join(lines)


def fallback_draft(outline: OutlineArtifact) -> DraftOutput:
    return DraftOutput(
        title=outline.topic,
        sections=[DraftSection(heading=s, body="") for s in outline.sections],
    )


def _reviewer_notes(ctx: PipelineContext) -> str:
    raw = ctx.read_json(HUMAN_REVIEW_ARTIFACT)
    if raw is None:
        return ""
    latest = HumanReviewStore.model_validate(raw).latest_by_gate.get(GATE_A_REVIEW)
    return latest.notes if latest is not None else ""


# ==============================
# Steps
# ==============================
def _outline(run: RunRecord, ctx: PipelineContext) -> None:
    sections: List[str] = [str(s) for s in (run.settings.get("sections") or DEFAULT_SECTIONS)]
    outline = OutlineArtifact(topic=run.topic, sections=sections)
    ctx.write_json("A", OUTLINE_ARTIFACT, outline.model_dump(mode="json"))


def _draft(run: RunRecord, ctx: PipelineContext, services: WorkflowServices) -> None:
    outline = OutlineArtifact.model_validate(ctx.read_json(OUTLINE_ARTIFACT))
    options: Dict[str, Any] = run.settings
    request = WorkerRequest(
        request_id=new_request_id(),
        run_id=run.run_id,
        step="B",
        agent_key=str(options.get("drafter") or DRAFTER_KEY),
        prompt=build_draft_prompt(outline, _reviewer_notes(ctx)),
        max_turns=int(options.get("max_turns") or services.settings.resilience.default_max_turns),
        timeout_ms=services.settings.worker.timeout_ms,
        output_model=model_path(DraftOutput),
    )
    used_fallback: Dict[str, bool] = {"value": False}

    def _fallback() -> Dict[str, Any]:
        used_fallback["value"] = True
        return fallback_draft(outline).model_dump(mode="json")

    payload = with_fallback(
        lambda: services.channel.call(request, ctx.token),
        _fallback,
        mode=options.get("adherence_mode") or services.settings.resilience.adherence_mode,
        label="Step B draft",
        notify=lambda message: ctx.log(message, step="B"),
    )
    draft = DraftOutput.model_validate(payload)
    ctx.write_json("B", DRAFT_ARTIFACT, {**draft.model_dump(mode="json"), "fallback_used": used_fallback["value"]})


def _finalize(run: RunRecord, ctx: PipelineContext) -> None:
    raw = dict(ctx.read_json(DRAFT_ARTIFACT) or {})
    fallback_used = bool(raw.pop("fallback_used", False))
    draft = DraftOutput.model_validate(raw)
    report = FinalReport(
        run_id=run.run_id,
        topic=run.topic,
        title=draft.title,
        sections=draft.sections,
        fallback_used=fallback_used,
        generated_at=now_iso(),
    )
    ctx.write_json("C", FINAL_JSON, report.model_dump(mode="json"))
    ctx.write_text("C", FINAL_MD, render_markdown(report))


def render_markdown(report: FinalReport) -> str:
    parts = [f"# {report.title}", ""]
    for section in report.sections:
        parts.extend([f"## {section.heading}", "", section.body or "_No content._", ""])
    return "\n".join(parts)


# ==============================
# Step Sequence
# ==============================
def run_demo(run: RunRecord, ctx: PipelineContext, services: WorkflowServices) -> Outcome:
    ctx.run_step("A", lambda c: _outline(run, c))
    paused: Optional[Outcome] = services.gates.require(
        ctx,
        GATE_A_REVIEW,
        "Review the outline before drafting.",
        next_action="Submit approve, request_changes or regenerate, then resume.",
    )
    if paused is not None:
        return paused
    ctx.run_step("B", lambda c: _draft(run, c, services))
    ctx.run_step("C", lambda c: _finalize(run, c))
    return Completed(summary={"final_report": FINAL_JSON})


WORKFLOW = WorkflowDef(name="demo", step_order=STEP_ORDER, gates=GATES, run=run_demo)

__all__ = ["WORKFLOW", "register_agents"]
