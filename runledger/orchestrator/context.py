# ==============================
# Pipeline Context
# ==============================
"""
Everything a step-sequence function receives besides the RunRecord.

Responsibilities:
- Expose start_from / should_run(...) for resume and rerun.
- Wrap step execution so already-done steps are never re-run (idempotent resume).
- Route artifact writes through RunStore + RunLedger so every write is recorded.
- Propagate the run's CancelToken.

StepSequence contract:
    pipeline(run: RunRecord, ctx: PipelineContext) -> Outcome
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from runledger.config.schema import Settings
from runledger.contracts.outcome import Outcome
from runledger.contracts.run_schema import RunRecord, StepStatus
from runledger.errors import GatePause, InvalidInputError
from runledger.logging.logger import LogContext, with_context
from runledger.memory.run_store import RunStore
from runledger.orchestrator.cancellation import CancelToken
from runledger.orchestrator.ledger import RunLedger

StepSequence = Callable[[RunRecord, "PipelineContext"], Outcome]
StepFn = Callable[["PipelineContext"], Any]


class PipelineContext:
    def __init__(
        self,
        *,
        run_id: str,
        settings: Settings,
        ledger: RunLedger,
        store: RunStore,
        token: CancelToken,
        step_order: List[str],
        start_from: Optional[str] = None,
    ) -> None:
        if start_from is not None and start_from not in step_order:
            raise InvalidInputError(f"Invalid start_from '{start_from}'", details={"step_order": step_order})
        self.run_id = run_id
        self.settings = settings
        self.ledger = ledger
        self.store = store
        self.token = token
        self.step_order = list(step_order)
        self.start_from = start_from or self.step_order[0]
        self.logger = with_context(logging.getLogger("runledger.pipeline"), LogContext(run_id=run_id))

    # ------------------------------------------------------------------ control
    def should_run(self, step: str) -> bool:
        return self.step_order.index(step) >= self.step_order.index(self.start_from)

    def check_cancelled(self) -> None:
        self.token.raise_if_aborted()

    def step_status(self, step: str) -> StepStatus:
        return self.ledger.require_run(self.run_id).step(step).status

    def is_done(self, step: str) -> bool:
        return self.step_status(step) == StepStatus.DONE

    def run_step(self, step: str, fn: StepFn) -> bool:
        """
        Execute fn(ctx) as `step` unless it is already done or before start_from.
        Returns True when fn actually ran. Failures mark the step error and re-raise.
        GatePause finishes the step (its artifacts stand) and re-raises.
        """
        self.check_cancelled()
        if self.is_done(step) or not self.should_run(step):
            self.log(f"Reusing {step} artifacts", step=step)
            return False
        self.ledger.start_step(self.run_id, step)
        try:
            fn(self)
        except GatePause as pause:
            self.ledger.finish_step(self.run_id, step, ok=True)
            self.log(f"{pause.gate_id} requested after {step}", step=step)
            raise
        except Exception as exc:
            message = "Cancelled" if self.token.aborted else (str(exc) or exc.__class__.__name__)
            self.ledger.finish_step(self.run_id, step, ok=False, error=message)
            raise
        self.ledger.finish_step(self.run_id, step, ok=True)
        return True

    # ------------------------------------------------------------------ artifacts
    def write_json(self, step: str, name: str, payload: Any) -> None:
        self.store.write_artifact_json(self.run_id, name, payload)
        self.ledger.add_artifact(self.run_id, step, name)

    def write_text(self, step: str, name: str, text: str) -> None:
        self.store.write_artifact_text(self.run_id, name, text)
        self.ledger.add_artifact(self.run_id, step, name)

    def read_json(self, name: str) -> Any:
        return self.store.read_artifact_json(self.run_id, name)

    def read_text(self, name: str) -> Optional[str]:
        return self.store.read_artifact_text(self.run_id, name)

    # ------------------------------------------------------------------ events
    def log(self, message: str, *, step: Optional[str] = None) -> None:
        self.ledger.log(self.run_id, message, step=step)
