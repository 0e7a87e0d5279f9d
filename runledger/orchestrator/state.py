# ==============================
# Orchestrator State
# ==============================
"""
Status groups and the step transition rule.

Intended usage:
- RunLedger validates every step transition with check_step_transition(...)
- Scheduler / RetentionManager read RUN_TERMINAL / RUN_ACTIVE
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

from typing import Dict, FrozenSet

from runledger.contracts.run_schema import RunStatus as RunStatus  # re-export
from runledger.contracts.run_schema import StepStatus as StepStatus  # re-export
from runledger.errors import InvalidTransitionError

# ==============================
# Status Groups
# ==============================
RUN_TERMINAL: FrozenSet[RunStatus] = frozenset(
    {
        RunStatus.DONE,
        RunStatus.ERROR,
    }
)

RUN_ACTIVE: FrozenSet[RunStatus] = frozenset(
    {
        RunStatus.QUEUED,
        RunStatus.RUNNING,
    }
)

STEP_TERMINAL: FrozenSet[StepStatus] = frozenset(
    {
        StepStatus.DONE,
        StepStatus.ERROR,
    }
)

# queued(0) -> running(1) -> done|error(2); never backward, never terminal -> terminal
_STEP_RANK: Dict[StepStatus, int] = {
    StepStatus.QUEUED: 0,
    StepStatus.RUNNING: 1,
    StepStatus.DONE: 2,
    StepStatus.ERROR: 2,
}


# ==============================
# Transition Rules
# ==============================
def can_transition_step(current: StepStatus, target: StepStatus) -> bool:
    return _STEP_RANK[target] > _STEP_RANK[current]


def check_step_transition(*, run_id: str, step: str, current: StepStatus, target: StepStatus) -> None:
    if not can_transition_step(current, target):
        raise InvalidTransitionError(
            f"Step '{step}' of run {run_id} cannot move from {current.value} to {target.value}",
            details={"run_id": run_id, "step": step, "from": current.value, "to": target.value},
        )


def is_terminal(status: RunStatus) -> bool:
    return status in RUN_TERMINAL
