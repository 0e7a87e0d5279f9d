# ==============================
# Run Scheduler
# ==============================
"""
Concurrency-bounded dispatcher for step-sequence functions.

Design:
- One thread per in-flight run, at most `scheduler.concurrency` at once.
- Each dispatched run owns a CancelToken; cancel() aborts it (running) or drops
  the queue entry (queued).
- The step-sequence function returns an Outcome. A raised GatePause is accepted
  as Paused and any other exception as Failed.
- Paused leaves the run paused with an active gate. It is never reported as an error.

Threading:
- self._cond guards the queue, the running map and the thread map.
- Ledger calls happen outside self._cond.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from runledger.config.schema import Settings
from runledger.contracts.outcome import Completed, Failed, Outcome, Paused
from runledger.contracts.run_schema import (
    DerivedFrom,
    GateAwaiting,
    RunGateState,
    RunRecord,
    RunStatus,
    StepStatus,
)
from runledger.errors import (
    GatePause,
    InvalidInputError,
    MissingArtifactError,
    RunCancelled,
    RunConflictError,
)
from runledger.memory.run_store import RunStore
from runledger.orchestrator.cancellation import CancelToken
from runledger.orchestrator.context import PipelineContext, StepSequence
from runledger.orchestrator.ledger import RunLedger
from runledger.utils.naming import is_safe_artifact_name, now_iso

CANCELLED_MARKER = "CANCELLED.txt"

logger = logging.getLogger("runledger.scheduler")


class Scheduler:
    def __init__(
        self,
        *,
        settings: Settings,
        ledger: RunLedger,
        pipeline: StepSequence,
        store: Optional[RunStore] = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.pipeline = pipeline
        self.store = store or ledger.store
        self.concurrency = max(1, int(settings.scheduler.concurrency))
        self._cond = threading.Condition()
        self._queue: Deque[Tuple[str, Optional[str]]] = deque()
        self._running: Dict[str, CancelToken] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._closed = False

    # ------------------------------------------------------------------ queries
    def is_running(self, run_id: str) -> bool:
        with self._cond:
            return run_id in self._running

    def is_queued(self, run_id: str) -> bool:
        with self._cond:
            return any(item[0] == run_id for item in self._queue)

    def running_ids(self) -> List[str]:
        with self._cond:
            return list(self._running)

    # ------------------------------------------------------------------ API
    def enqueue(self, run_id: str, *, start_from: Optional[str] = None) -> bool:
        """
        Queue a run for execution.
        False when the run is unknown or already executing; True for a duplicate queue entry.
        """
        run = self.ledger.get_run(run_id)
        if run is None or run.status == RunStatus.RUNNING:
            return False
        if start_from is not None and start_from not in run.step_order:
            raise InvalidInputError(f"Invalid start_from '{start_from}'", details={"step_order": run.step_order})
        with self._cond:
            if self._closed or run_id in self._running:
                return False
            if any(item[0] == run_id for item in self._queue):
                return True
            self._queue.append((run_id, start_from))
        self.ledger.log(run_id, f"Queued (max concurrency {self.concurrency})")
        self._drain()
        return True

    def cancel(self, run_id: str) -> bool:
        if not self.ledger.has_run(run_id):
            return False
        with self._cond:
            token = self._running.get(run_id)
            queued = next((item for item in self._queue if item[0] == run_id), None)
            if token is None and queued is not None:
                self._queue.remove(queued)
        if token is not None:
            self.ledger.log(run_id, "Cancellation requested")
            token.abort("Cancelled")
            return True
        if queued is not None:
            self.ledger.error(run_id, "Cancelled while queued")
            self.ledger.set_run_status(run_id, RunStatus.ERROR, finished_at=now_iso())
            return True
        return False

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._queue or self._running:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work, cancel queued and running runs, then wait."""
        with self._cond:
            self._closed = True
            queued = [item[0] for item in self._queue]
            tokens = list(self._running.values())
        for run_id in queued:
            self.cancel(run_id)
        for token in tokens:
            token.abort("Scheduler shutdown")
        self.wait_idle(timeout if timeout is not None else self.settings.scheduler.shutdown_timeout_seconds)

    # ------------------------------------------------------------------ rerun
    def rerun(self, parent_run_id: str, start_from: str) -> RunRecord:
        """
        Create a derived run that reuses the parent's steps before start_from and
        schedule it from start_from.

        Rules:
        - the parent must not be executing
        - every step strictly before start_from must be done in the parent
        - every artifact those steps claim must still exist on disk
        - only safe artifact names are copied
        """
        parent = self.ledger.require_run(parent_run_id)
        if self.is_running(parent_run_id) or parent.status == RunStatus.RUNNING:
            raise RunConflictError(f"Run {parent_run_id} is running", details={"run_id": parent_run_id})
        if start_from not in parent.step_order:
            raise InvalidInputError(
                f"Invalid start_from '{start_from}'",
                details={"step_order": parent.step_order},
            )

        prerequisites = parent.step_order[: parent.step_order.index(start_from)]
        reuse: Dict[str, List[str]] = {}
        for step in prerequisites:
            rec = parent.step(step)
            if rec.status != StepStatus.DONE:
                raise InvalidInputError(
                    f"Cannot rerun from {start_from}: step {step} is {rec.status.value}",
                    details={"step": step, "status": rec.status.value},
                )
            names: List[str] = []
            for name in rec.artifacts:
                if not is_safe_artifact_name(name):
                    logger.warning(
                        "skipping unsafe artifact name %r",
                        name,
                        extra={"run_id": parent_run_id, "step": step},
                    )
                    continue
                if not self.store.artifact_exists(parent_run_id, name):
                    raise MissingArtifactError(
                        f"Missing artifact {name} for step {step} in run {parent_run_id}",
                        details={"run_id": parent_run_id, "step": step, "artifact": name},
                    )
                names.append(name)
            reuse[step] = names

        child = self.ledger.create_run(
            parent.topic,
            step_order=parent.step_order,
            settings=parent.settings,
            derived_from=DerivedFrom(run_id=parent_run_id, start_from=start_from, created_at=now_iso()),
        )
        for step, names in reuse.items():
            for name in names:
                self.store.copy_artifact(src_run_id=parent_run_id, dst_run_id=child.run_id, name=name)
            self.ledger.mark_step_reused(child.run_id, step, names)
        self.ledger.log(child.run_id, f"Derived from {parent_run_id} starting at {start_from}")
        self.enqueue(child.run_id, start_from=start_from)
        return self.ledger.require_run(child.run_id)

    # ------------------------------------------------------------------ dispatch
    def _drain(self) -> None:
        with self._cond:
            while len(self._running) < self.concurrency and self._queue:
                run_id, start_from = self._queue.popleft()
                token = CancelToken()
                self._running[run_id] = token
                thread = threading.Thread(
                    target=self._execute,
                    args=(run_id, start_from, token),
                    name=f"run-{run_id}",
                    daemon=True,
                )
                self._threads[run_id] = thread
                thread.start()

    def _execute(self, run_id: str, start_from: Optional[str], token: CancelToken) -> None:
        try:
            self.ledger.set_run_status(run_id, RunStatus.RUNNING)
            run = self.ledger.require_run(run_id)
            outcome = self._invoke(run, start_from, token)
            self._apply_outcome(run_id, outcome, token)
        except Exception:
            # thread boundary: the run may have been evicted underneath us
            logger.exception("run dispatch failed", extra={"run_id": run_id})
        finally:
            with self._cond:
                self._running.pop(run_id, None)
                self._threads.pop(run_id, None)
                self._cond.notify_all()
            self._drain()

    def _invoke(self, run: RunRecord, start_from: Optional[str], token: CancelToken) -> Outcome:
        ctx = PipelineContext(
            run_id=run.run_id,
            settings=self.settings,
            ledger=self.ledger,
            store=self.store,
            token=token,
            step_order=run.step_order,
            start_from=start_from,
        )
        try:
            return self.pipeline(run, ctx)
        except GatePause as pause:
            return Paused(gate_id=pause.gate_id, resume_from=pause.resume_from, message=pause.message)
        except RunCancelled as exc:
            return Failed(error=exc.reason, exc=exc)
        except Exception as exc:
            logger.exception("step sequence raised", extra={"run_id": run.run_id})
            return Failed(error=str(exc) or exc.__class__.__name__, exc=exc)

    def _apply_outcome(self, run_id: str, outcome: Outcome, token: CancelToken) -> None:
        if isinstance(outcome, Completed):
            self.ledger.set_run_status(run_id, RunStatus.DONE, finished_at=now_iso())
            return

        if isinstance(outcome, Paused) and not token.aborted:
            paused_at = now_iso()
            self.ledger.log(run_id, f"Paused at {outcome.gate_id}: {outcome.message}")
            gate = RunGateState(
                gate_id=outcome.gate_id,
                resume_from=outcome.resume_from,
                message=outcome.message,
                awaiting=GateAwaiting.REVIEW_SUBMISSION,
                requested_at=paused_at,
            )
            self.ledger.set_run_status(run_id, RunStatus.PAUSED, active_gate=gate)
            self.ledger.gate_required(
                run_id,
                {
                    "gate_id": outcome.gate_id,
                    "resume_from": outcome.resume_from,
                    "message": outcome.message,
                    "at": paused_at,
                },
            )
            return

        message = "Cancelled" if token.aborted else getattr(outcome, "error", "Run failed")
        self.ledger.fail_running_steps(run_id, message)
        self.ledger.error(run_id, message)
        self.ledger.set_run_status(run_id, RunStatus.ERROR, finished_at=now_iso())
        if token.aborted:
            self.store.write_artifact_text(run_id, CANCELLED_MARKER, f"Cancelled at {now_iso()}\n")
