# ==============================
# Run Engine
# ==============================
"""
Facade wiring ledger, scheduler, gates, retention and SLO for one workflow.

Every public operation returns a RunOperationResult envelope; RunLedgerError
subclasses are mapped onto their stable error codes. Gateway API/CLI call
only this class.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from runledger.agents.worker import InProcessChannel, WorkerChannel
from runledger.config.schema import Settings
from runledger.contracts.outcome import Outcome
from runledger.contracts.run_schema import RunOperationResult, RunRecord
from runledger.errors import (
    ArtifactNotFoundError,
    InvalidInputError,
    RunConflictError,
    RunLedgerError,
    RunNotFoundError,
)
from runledger.memory.run_store import RunStore
from runledger.orchestrator.context import PipelineContext
from runledger.orchestrator.events import EventChannel, EventHandler, Subscription
from runledger.orchestrator.gates import GateProtocol
from runledger.orchestrator.ledger import RunLedger
from runledger.orchestrator.retention import RetentionManager
from runledger.orchestrator.scheduler import Scheduler
from runledger.orchestrator.slo import SloPolicyManager
from runledger.orchestrator.state import RUN_TERMINAL
from runledger.orchestrator.workflow import AgentChannel, WorkflowDef, WorkflowServices

TOPIC_MIN_CHARS = 3
TOPIC_MAX_CHARS = 500

logger = logging.getLogger("runledger.engine")


class RunEngine:
    def __init__(
        self,
        *,
        settings: Settings,
        workflow: WorkflowDef,
        ledger: RunLedger,
        channel: AgentChannel,
    ) -> None:
        self.settings = settings
        self.workflow = workflow
        self.ledger = ledger
        self.store = ledger.store
        self.scheduler = Scheduler(settings=settings, ledger=ledger, pipeline=self._run_workflow)
        self.gates = GateProtocol(
            ledger=ledger,
            scheduler=self.scheduler,
            gates=workflow.gates,
            workflow=workflow.name,
        )
        self.retention_manager = RetentionManager(settings=settings, ledger=ledger)
        self.slo = SloPolicyManager(settings=settings, store=self.store, step_order=workflow.step_order)
        self.services = WorkflowServices(settings=settings, gates=self.gates, channel=channel)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        workflow: WorkflowDef,
        channel: Optional[AgentChannel] = None,
        load_existing: bool = True,
    ) -> "RunEngine":
        store = RunStore.from_settings(settings)
        events = EventChannel(mirror_to_log=settings.logging.console)
        ledger = RunLedger(settings=settings, store=store, events=events)
        if load_existing:
            loaded = ledger.load_from_disk()
            logger.info("loaded %d runs from %s", loaded, store.root)
        if channel is None:
            channel = WorkerChannel(settings) if settings.worker.enabled else InProcessChannel(settings)
        return cls(settings=settings, workflow=workflow, ledger=ledger, channel=channel)

    def _run_workflow(self, run: RunRecord, ctx: PipelineContext) -> Outcome:
        return self.workflow.run(run, ctx, self.services)

    # ------------------------------------------------------------------ runs
    def create_run(self, *, topic: str, settings: Optional[Dict[str, Any]] = None) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            cleaned = (topic or "").strip()
            if not TOPIC_MIN_CHARS <= len(cleaned) <= TOPIC_MAX_CHARS:
                raise InvalidInputError(
                    f"topic must be {TOPIC_MIN_CHARS}-{TOPIC_MAX_CHARS} characters",
                    details={"length": len(cleaned)},
                )
            run = self.ledger.create_run(cleaned, step_order=self.workflow.step_order, settings=settings)
            self.scheduler.enqueue(run.run_id)
            return {"run_id": run.run_id, "run": self.run_view(run.run_id)}

        return self._wrap(_op)

    def get_run(self, *, run_id: str) -> RunOperationResult:
        return self._wrap(lambda: {"run": self.run_view(run_id)})

    def list_runs(self) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            runs = [
                {
                    "run_id": r.run_id,
                    "topic": r.topic,
                    "status": r.status.value,
                    "started_at": r.started_at,
                    "finished_at": r.finished_at,
                    "derived_from": r.derived_from.model_dump() if r.derived_from else None,
                }
                for r in self.ledger.list_runs()
            ]
            return {"runs": runs}

        return self._wrap(_op)

    def cancel_run(self, *, run_id: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            self.ledger.require_run(run_id)
            if not self.scheduler.cancel(run_id):
                raise RunConflictError("Run is not queued or running", details={"run_id": run_id})
            return {"run_id": run_id, "cancel_requested": True}

        return self._wrap(_op)

    def rerun(self, *, run_id: str, start_from: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            child = self.scheduler.rerun(run_id, start_from)
            return {"run_id": child.run_id, "derived_from": run_id, "start_from": start_from}

        return self._wrap(_op)

    # ------------------------------------------------------------------ gates
    def gate_history(self, *, run_id: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            run = self.ledger.require_run(run_id)
            return {
                "run_id": run_id,
                "active_gate": run.active_gate.model_dump(mode="json") if run.active_gate else None,
                "gates": [asdict(g) for g in self.workflow.gates],
                "review": self.gates.read_store(run_id).model_dump(mode="json"),
            }

        return self._wrap(_op)

    def submit_review(
        self,
        *,
        run_id: str,
        gate_id: str,
        status: str,
        notes: str = "",
        requested_changes: Optional[List[Dict[str, Any]]] = None,
    ) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            submission = self.gates.submit_review(
                run_id,
                gate_id,
                status=status,
                notes=notes,
                requested_changes=requested_changes,
            )
            return {
                "review": submission.entry.model_dump(mode="json"),
                "recommended_action": submission.recommended_action,
                "suggested_resume_from": submission.suggested_resume_from,
                "run": self.run_view(run_id),
            }

        return self._wrap(_op)

    def resume_run(
        self,
        *,
        run_id: str,
        gate_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> RunOperationResult:
        return self._wrap(lambda: asdict(self.gates.resume(run_id, gate_id=gate_id, mode=mode)))

    # ------------------------------------------------------------------ artifacts
    def list_artifacts(self, *, run_id: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            self.ledger.require_run(run_id)
            return {"run_id": run_id, "artifacts": self.store.list_artifacts(run_id)}

        return self._wrap(_op)

    def locate_artifact(self, *, run_id: str, name: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            self.ledger.require_run(run_id)
            path = self.store.resolve_artifact(run_id, name)
            if path is None:
                raise ArtifactNotFoundError(run_id, name)
            return {"run_id": run_id, "name": name, "path": str(path)}

        return self._wrap(_op)

    def export_run(self, *, run_id: str) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            self.ledger.require_run(run_id)
            return {"run_id": run_id, "filename": f"run-{run_id}.zip", "content": self.store.export_zip(run_id)}

        return self._wrap(_op)

    # ------------------------------------------------------------------ events
    def subscribe_events(self, *, run_id: str, handler: EventHandler) -> Subscription:
        """Raises RunNotFoundError; callers own the returned handle."""
        sub = self.ledger.subscribe(run_id, handler)
        if sub is None:
            raise RunNotFoundError(run_id)
        return sub

    def is_settled(self, run_id: str) -> bool:
        """True once the run is terminal or no longer known."""
        run = self.ledger.get_run(run_id)
        return run is None or run.status in RUN_TERMINAL

    # ------------------------------------------------------------------ retention / slo
    def retention(self, *, keep_last: Optional[Any] = None) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            keep = self.retention_manager.clamp_keep_last(keep_last)
            return {
                "stats": self.retention_manager.stats(),
                "analytics": self.retention_manager.analytics(),
                "preview": self.retention_manager.cleanup_terminal_runs(keep_last=keep, dry_run=True),
            }

        return self._wrap(_op)

    def cleanup(self, *, keep_last: Optional[Any] = None, dry_run: bool = False) -> RunOperationResult:
        def _op() -> Dict[str, Any]:
            keep = self.retention_manager.clamp_keep_last(keep_last)
            return self.retention_manager.cleanup_terminal_runs(keep_last=keep, dry_run=dry_run)

        return self._wrap(_op)

    def get_slo_policy(self) -> RunOperationResult:
        return self._wrap(lambda: self.slo.load().model_dump(mode="json"))

    def set_slo_policy(self, *, thresholds_ms: Dict[str, Any]) -> RunOperationResult:
        return self._wrap(lambda: self.slo.update(thresholds_ms).model_dump(mode="json"))

    # ------------------------------------------------------------------ lifecycle
    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait_idle(timeout)

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        channel = self.services.channel
        if isinstance(channel, InProcessChannel):
            channel.shutdown()

    # ------------------------------------------------------------------ helpers
    def run_view(self, run_id: str) -> Dict[str, Any]:
        run = self.ledger.require_run(run_id)
        data = run.model_dump(mode="json")
        data["is_running"] = self.scheduler.is_running(run_id)
        data["step_slo"] = self.slo.evaluate(run)
        return data

    def _wrap(self, op: Callable[[], Dict[str, Any]]) -> RunOperationResult:
        try:
            return RunOperationResult.success(op())
        except RunLedgerError as exc:
            return RunOperationResult.failure(code=exc.code, message=exc.message, details=exc.details)
