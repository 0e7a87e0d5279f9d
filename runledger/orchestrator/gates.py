# ==============================
# Gate Protocol
# ==============================
"""
Human-in-the-loop gates.

A gate suspends a run until a reviewer records a decision. The flow is:
  review_required -> review_submitted -> resumed -> running

Design:
- Step-sequence functions call require(...); it returns Paused (or None once
  approved) instead of raising, so pausing is a normal Outcome.
- Decisions live in intermediate/human_review.json (append-only history plus
  last-write-wins latest_by_gate), so pause/resume survives restarts.
- resume(...) validates the decision and re-enqueues the run at the gate's
  resume_from step. Steps that are already done are skipped by PipelineContext.
- A "regenerate" decision never re-opens done steps. It derives a new run
  starting at the gate's owning step, and the paused run is closed as superseded.

This module does NOT know about HTTP or CLI.
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from runledger.contracts.outcome import Paused
from runledger.contracts.review_schema import (
    HUMAN_REVIEW_ARTIFACT,
    GateRequirement,
    HumanReviewEntry,
    HumanReviewStore,
    RequestedChange,
    gate_requirement_artifact_name,
)
from runledger.contracts.run_schema import GateAwaiting, ReviewDecision, RunStatus
from runledger.errors import GateConflictError, InvalidInputError, RunConflictError
from runledger.orchestrator.context import PipelineContext
from runledger.orchestrator.ledger import RunLedger
from runledger.orchestrator.scheduler import Scheduler
from runledger.utils.naming import now_iso


# ==============================
# Models
# ==============================
@dataclass(frozen=True)
class GateSpec:
    gate_id: str
    step: str
    resume_from: str


@dataclass(frozen=True)
class GateSubmission:
    entry: HumanReviewEntry
    recommended_action: str
    suggested_resume_from: str


@dataclass(frozen=True)
class ResumeResult:
    run_id: str
    gate_id: str
    start_from: str
    mode: str
    resumed_at: str
    derived_run_id: Optional[str] = None


_RECOMMENDED_ACTION = {
    ReviewDecision.APPROVE: "resume",
    ReviewDecision.REGENERATE: "resume_regenerate",
    ReviewDecision.REQUEST_CHANGES: "wait_for_changes",
}

RESUME_MODES = ("resume", "regenerate")


# ==============================
# Protocol
# ==============================
class GateProtocol:
    def __init__(
        self,
        *,
        ledger: RunLedger,
        scheduler: Scheduler,
        gates: List[GateSpec],
        workflow: str = "",
    ) -> None:
        self.ledger = ledger
        self.store = ledger.store
        self.scheduler = scheduler
        self.gates: Dict[str, GateSpec] = {g.gate_id: g for g in gates}
        self.workflow = workflow
        self._lock = threading.Lock()

    def spec(self, gate_id: str) -> GateSpec:
        spec = self.gates.get(gate_id)
        if spec is None:
            raise InvalidInputError(f"Unknown gate '{gate_id}'", details={"gates": sorted(self.gates)})
        return spec

    # ------------------------------------------------------------------ step-sequence side
    def require(
        self,
        ctx: PipelineContext,
        gate_id: str,
        message: str,
        *,
        next_action: str = "",
    ) -> Optional[Paused]:
        """
        Return None if the gate is already approved, otherwise persist the gate
        requirement descriptor and return Paused for the step-sequence function to return.
        """
        spec = self.spec(gate_id)
        if self.is_cleared(ctx.run_id, gate_id):
            ctx.log(f"{gate_id} approved", step=spec.step)
            return None
        requirement = GateRequirement(
            gate_id=gate_id,
            workflow=self.workflow,
            message=message,
            next_action=next_action,
            resume_from=spec.resume_from,
        )
        ctx.write_json(spec.step, gate_requirement_artifact_name(gate_id), requirement.model_dump(mode="json"))
        return Paused(gate_id=gate_id, resume_from=spec.resume_from, message=message)

    def is_cleared(self, run_id: str, gate_id: str) -> bool:
        latest = self.latest_decision(run_id, gate_id)
        return latest is not None and latest.status == ReviewDecision.APPROVE

    # ------------------------------------------------------------------ review store
    def read_store(self, run_id: str) -> HumanReviewStore:
        raw = self.store.read_artifact_json(run_id, HUMAN_REVIEW_ARTIFACT)
        store = HumanReviewStore.model_validate(raw) if raw is not None else HumanReviewStore()
        for gate_id in self.gates:
            store.latest_by_gate.setdefault(gate_id, None)
        return store

    def latest_decision(self, run_id: str, gate_id: str) -> Optional[HumanReviewEntry]:
        return self.read_store(run_id).latest_by_gate.get(gate_id)

    def submit_review(
        self,
        run_id: str,
        gate_id: str,
        *,
        status: str,
        notes: str = "",
        requested_changes: Optional[List[Dict[str, Any]]] = None,
    ) -> GateSubmission:
        run = self.ledger.require_run(run_id)
        spec = self.spec(gate_id)
        try:
            entry = HumanReviewEntry(
                gate_id=gate_id,
                status=ReviewDecision(status),
                notes=notes,
                requested_changes=[RequestedChange.model_validate(c) for c in (requested_changes or [])],
                submitted_at=now_iso(),
            )
        except (ValueError, ValidationError) as exc:
            raise InvalidInputError(f"Invalid review payload: {exc}") from exc

        with self._lock:
            store = self.read_store(run_id)
            store.history.append(entry)
            store.latest_by_gate[gate_id] = entry
            self.store.write_artifact_json(run_id, HUMAN_REVIEW_ARTIFACT, store.model_dump(mode="json"))
        self.ledger.add_artifact(run_id, spec.step, HUMAN_REVIEW_ARTIFACT)
        self.ledger.gate_submitted(
            run_id,
            {"gate_id": gate_id, "status": entry.status.value, "submitted_at": entry.submitted_at},
        )

        gate = run.active_gate
        if run.status == RunStatus.PAUSED and gate is not None and gate.gate_id == gate_id:
            awaiting = (
                GateAwaiting.CHANGES_REQUESTED
                if entry.status == ReviewDecision.REQUEST_CHANGES
                else GateAwaiting.RESUME
            )
            self.ledger.update_active_gate(
                run_id,
                awaiting=awaiting,
                submitted_decision=entry.status,
                submitted_at=entry.submitted_at,
                review_artifact=HUMAN_REVIEW_ARTIFACT,
            )

        suggested = spec.step if entry.status == ReviewDecision.REGENERATE else spec.resume_from
        return GateSubmission(
            entry=entry,
            recommended_action=_RECOMMENDED_ACTION[entry.status],
            suggested_resume_from=suggested,
        )

    # ------------------------------------------------------------------ resume
    def resume(self, run_id: str, *, gate_id: Optional[str] = None, mode: Optional[str] = None) -> ResumeResult:
        run = self.ledger.require_run(run_id)
        if self.scheduler.is_running(run_id) or run.status == RunStatus.RUNNING:
            raise GateConflictError("Run is currently running", details={"run_id": run_id})
        gate = run.active_gate
        if run.status != RunStatus.PAUSED or gate is None:
            raise GateConflictError("Run is not paused at a gate", details={"status": run.status.value})
        if gate_id is not None and gate_id != gate.gate_id:
            raise GateConflictError(
                f"Run is paused at {gate.gate_id}, not {gate_id}",
                details={"active_gate": gate.gate_id},
            )

        latest = self.latest_decision(run_id, gate.gate_id)
        if latest is None:
            raise GateConflictError(f"No review submitted for {gate.gate_id}", details={"gate_id": gate.gate_id})
        if latest.status == ReviewDecision.REQUEST_CHANGES:
            raise GateConflictError(
                f"Latest review for {gate.gate_id} requests changes",
                details={"gate_id": gate.gate_id},
            )

        chosen = mode or ("regenerate" if latest.status == ReviewDecision.REGENERATE else "resume")
        if chosen not in RESUME_MODES:
            raise InvalidInputError(f"Invalid resume mode '{chosen}'", details={"modes": list(RESUME_MODES)})
        if chosen == "resume" and latest.status != ReviewDecision.APPROVE:
            raise GateConflictError(
                f"Latest review for {gate.gate_id} is {latest.status.value}; resume needs approve",
                details={"gate_id": gate.gate_id},
            )

        resumed_at = now_iso()
        if chosen == "regenerate":
            return self._regenerate(run_id, gate.gate_id, resumed_at)

        start_from = gate.resume_from
        self.ledger.set_run_status(run_id, RunStatus.QUEUED)
        if not self.scheduler.enqueue(run_id, start_from=start_from):
            self.ledger.set_run_status(run_id, RunStatus.PAUSED, active_gate=gate)
            raise RunConflictError("Unable to enqueue run", details={"run_id": run_id})
        self.ledger.run_resumed(
            run_id,
            {"gate_id": gate.gate_id, "start_from": start_from, "mode": chosen, "resumed_at": resumed_at},
        )
        return ResumeResult(run_id=run_id, gate_id=gate.gate_id, start_from=start_from, mode=chosen, resumed_at=resumed_at)

    def _regenerate(self, run_id: str, gate_id: str, resumed_at: str) -> ResumeResult:
        spec = self.spec(gate_id)
        child = self.scheduler.rerun(run_id, spec.step)
        self.ledger.set_superseded_by(run_id, child.run_id)
        self.ledger.log(run_id, f"Superseded by {child.run_id} (regenerate from {spec.step})")
        self.ledger.set_run_status(run_id, RunStatus.ERROR, finished_at=resumed_at)
        self.ledger.run_resumed(
            run_id,
            {
                "gate_id": gate_id,
                "start_from": spec.step,
                "mode": "regenerate",
                "resumed_at": resumed_at,
                "derived_run_id": child.run_id,
            },
        )
        return ResumeResult(
            run_id=run_id,
            gate_id=gate_id,
            start_from=spec.step,
            mode="regenerate",
            resumed_at=resumed_at,
            derived_run_id=child.run_id,
        )
