# ==============================
# Run Ledger
# ==============================
"""
Authoritative in-process state for every run, backed by run.json snapshots.

Rules:
- Single writer: every mutation goes through a RunLedger method, under one RLock.
- Every mutation persists the full snapshot (atomic replace) before events fire.
- Step transitions are monotonic (see orchestrator/state.py).
- Setting a run status other than paused clears active_gate.
- get_run/list_runs hand out copies; callers never hold live records.
- On load, runs interrupted mid-flight are force-failed (crash recovery).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from runledger.config.schema import Settings
from runledger.contracts.event_schema import RunEvent, RunEventKind
from runledger.contracts.run_schema import (
    DerivedFrom,
    RunGateState,
    RunRecord,
    RunStatus,
    StepRecord,
    StepStatus,
)
from runledger.errors import InvalidInputError, RunIdAllocationError, RunNotFoundError
from runledger.memory.run_store import RunStore
from runledger.orchestrator.events import EventChannel, EventHandler, Subscription
from runledger.orchestrator.state import RUN_TERMINAL, check_step_transition
from runledger.utils.naming import ensure_safe_artifact_name, make_run_id, now_iso

RUN_ID_MAX_ATTEMPTS = 10
RECOVERY_MESSAGE = "Recovered after restart while run was active."

logger = logging.getLogger("runledger.ledger")

_UNSET: Any = object()


class RunLedger:
    def __init__(
        self,
        *,
        settings: Settings,
        store: RunStore,
        events: Optional[EventChannel] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events or EventChannel(mirror_to_log=settings.logging.console)
        self._lock = threading.RLock()
        self._runs: Dict[str, RunRecord] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunLedger":
        return cls(settings=settings, store=RunStore.from_settings(settings))

    # ------------------------------------------------------------------ creation
    def create_run(
        self,
        topic: str,
        *,
        step_order: Iterable[str],
        settings: Optional[Dict[str, Any]] = None,
        derived_from: Optional[DerivedFrom] = None,
    ) -> RunRecord:
        order = list(step_order)
        if not order:
            raise InvalidInputError("A run needs at least one step.")
        if len(set(order)) != len(order):
            raise InvalidInputError("Step names must be unique.", details={"step_order": order})

        with self._lock:
            run_id = self._allocate_run_id(topic)
            self.store.ensure_run_dirs(run_id)
            run = RunRecord(
                run_id=run_id,
                topic=topic,
                settings=dict(settings or {}),
                derived_from=derived_from,
                status=RunStatus.QUEUED,
                started_at=now_iso(),
                step_order=order,
                steps={name: StepRecord(name=name) for name in order},
                output_folder=self.store.output_folder(run_id),
            )
            self._runs[run_id] = run
            self._persist(run)
            logger.info("run created", extra={"run_id": run_id})
            return run.model_copy(deep=True)

    def _allocate_run_id(self, topic: str) -> str:
        for _ in range(RUN_ID_MAX_ATTEMPTS):
            candidate = make_run_id(topic)
            if candidate in self._runs or self.store.run_exists(candidate):
                continue
            return candidate
        raise RunIdAllocationError("Unable to allocate unique run id after retries")

    # ------------------------------------------------------------------ reads
    def has_run(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._runs

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run is not None else None

    def require_run(self, run_id: str) -> RunRecord:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(self) -> List[RunRecord]:
        with self._lock:
            runs = [r.model_copy(deep=True) for r in self._runs.values()]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    # ------------------------------------------------------------------ steps
    def start_step(self, run_id: str, step: str) -> None:
        with self._lock:
            run = self._live(run_id)
            rec = self._step(run, step)
            check_step_transition(run_id=run_id, step=step, current=rec.status, target=StepStatus.RUNNING)
            rec.status = StepStatus.RUNNING
            rec.started_at = now_iso()
            rec.finished_at = None
            rec.error = None
            self._persist(run)
        self._emit(RunEventKind.STEP_STARTED, run_id, step=step)

    def finish_step(self, run_id: str, step: str, *, ok: bool, error: Optional[str] = None) -> None:
        target = StepStatus.DONE if ok else StepStatus.ERROR
        with self._lock:
            run = self._live(run_id)
            rec = self._step(run, step)
            check_step_transition(run_id=run_id, step=step, current=rec.status, target=target)
            rec.status = target
            rec.finished_at = now_iso()
            rec.error = None if ok else (error or "Step failed")
            self._persist(run)
        self._emit(RunEventKind.STEP_FINISHED, run_id, step=step, payload={"ok": ok, "error": None if ok else error})
        if not ok and error:
            self._emit(RunEventKind.ERROR, run_id, step=step, payload={"message": error})

    def mark_step_reused(self, run_id: str, step: str, artifacts: Iterable[str]) -> None:
        """Silent queued -> done used when a derived run inherits a parent's step."""
        names = [ensure_safe_artifact_name(a) for a in artifacts]
        with self._lock:
            run = self._live(run_id)
            rec = self._step(run, step)
            check_step_transition(run_id=run_id, step=step, current=rec.status, target=StepStatus.DONE)
            rec.status = StepStatus.DONE
            now = now_iso()
            rec.started_at = rec.started_at or now
            rec.finished_at = now
            for name in names:
                if name not in rec.artifacts:
                    rec.artifacts.append(name)
            self._persist(run)

    def fail_running_steps(self, run_id: str, message: str) -> List[str]:
        """Flip every running step to error; returns the affected step names."""
        failed: List[str] = []
        with self._lock:
            run = self._live(run_id)
            now = now_iso()
            for name in run.step_order:
                rec = run.steps[name]
                if rec.status == StepStatus.RUNNING:
                    rec.status = StepStatus.ERROR
                    rec.error = message
                    rec.finished_at = now
                    failed.append(name)
            if failed:
                self._persist(run)
        for name in failed:
            self._emit(RunEventKind.STEP_FINISHED, run_id, step=name, payload={"ok": False, "error": message})
        return failed

    # ------------------------------------------------------------------ artifacts
    def add_artifact(self, run_id: str, step: str, name: str) -> None:
        ensure_safe_artifact_name(name)
        with self._lock:
            run = self._live(run_id)
            rec = self._step(run, step)
            if name not in rec.artifacts:
                rec.artifacts.append(name)
                self._persist(run)
        self._emit(RunEventKind.ARTIFACT_WRITTEN, run_id, step=step, payload={"name": name})

    # ------------------------------------------------------------------ run status
    def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        finished_at: Optional[str] = None,
        active_gate: Any = _UNSET,
    ) -> RunRecord:
        with self._lock:
            run = self._live(run_id)
            run.status = status
            if finished_at is not None:
                run.finished_at = finished_at
            elif status not in RUN_TERMINAL:
                run.finished_at = None
            if status != RunStatus.PAUSED:
                run.active_gate = None
            elif active_gate is not _UNSET:
                run.active_gate = active_gate
            self._persist(run)
            return run.model_copy(deep=True)

    def update_active_gate(self, run_id: str, **changes: Any) -> Optional[RunGateState]:
        with self._lock:
            run = self._live(run_id)
            if run.active_gate is None:
                return None
            run.active_gate = run.active_gate.model_copy(update=changes)
            self._persist(run)
            return run.active_gate.model_copy()

    def set_superseded_by(self, run_id: str, child_run_id: str) -> None:
        with self._lock:
            run = self._live(run_id)
            run.superseded_by = child_run_id
            self._persist(run)

    # ------------------------------------------------------------------ informational events
    def gate_required(self, run_id: str, payload: Dict[str, Any]) -> None:
        self._emit(RunEventKind.GATE_REQUIRED, run_id, payload=payload)

    def gate_submitted(self, run_id: str, payload: Dict[str, Any]) -> None:
        self._emit(RunEventKind.GATE_SUBMITTED, run_id, payload=payload)

    def run_resumed(self, run_id: str, payload: Dict[str, Any]) -> None:
        self._emit(RunEventKind.RUN_RESUMED, run_id, payload=payload)

    def log(self, run_id: str, message: str, step: Optional[str] = None) -> None:
        self._emit(RunEventKind.LOG, run_id, step=step, payload={"message": message})

    def error(self, run_id: str, message: str, step: Optional[str] = None) -> None:
        self._emit(RunEventKind.ERROR, run_id, step=step, payload={"message": message})

    def subscribe(self, run_id: str, handler: EventHandler) -> Optional[Subscription]:
        if not self.has_run(run_id):
            return None
        return self.events.subscribe(run_id, handler)

    # ------------------------------------------------------------------ lifecycle
    def evict(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)
        self.events.drop_run(run_id)

    def load_from_disk(self) -> int:
        """
        Reload every snapshot under the output root.
        Non-terminal, non-paused runs are recovered to error and rewritten.
        Returns the number of runs loaded.
        """
        loaded = 0
        for snapshot in self.store.iter_snapshots():
            recovered = recover_interrupted_run(snapshot)
            if recovered is not snapshot:
                self.store.write_snapshot(recovered)
                logger.warning("recovered interrupted run", extra={"run_id": recovered.run_id})
            with self._lock:
                self._runs[recovered.run_id] = recovered
            loaded += 1
        return loaded

    # ------------------------------------------------------------------ internals
    def _live(self, run_id: str) -> RunRecord:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _step(self, run: RunRecord, step: str) -> StepRecord:
        rec = run.steps.get(step)
        if rec is None:
            raise InvalidInputError(f"Unknown step '{step}' for run {run.run_id}", details={"step": step})
        return rec

    def _persist(self, run: RunRecord) -> None:
        self.store.write_snapshot(run)

    def _emit(
        self,
        kind: RunEventKind,
        run_id: str,
        *,
        step: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.publish(RunEvent(kind=kind, run_id=run_id, at=now_iso(), step=step, payload=payload or {}))


# ==============================
# Crash Recovery
# ==============================
def recover_interrupted_run(run: RunRecord) -> RunRecord:
    """
    Return `run` unchanged if it is terminal or paused; otherwise a copy with every
    running/queued step forced to error and the run itself forced to error.
    """
    if run.status in RUN_TERMINAL or run.status == RunStatus.PAUSED:
        return run
    recovered = run.model_copy(deep=True)
    now = now_iso()
    for name in recovered.step_order:
        rec = recovered.steps.get(name)
        if rec is None:
            continue
        if rec.status in (StepStatus.RUNNING, StepStatus.QUEUED):
            rec.status = StepStatus.ERROR
            rec.error = rec.error or RECOVERY_MESSAGE
            rec.finished_at = rec.finished_at or now
    recovered.status = RunStatus.ERROR
    recovered.finished_at = recovered.finished_at or now
    recovered.active_gate = None
    return recovered
