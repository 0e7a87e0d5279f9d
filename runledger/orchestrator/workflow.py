# ==============================
# Workflow Definition
# ==============================
"""
A workflow is a fixed step order, its gates and one step-sequence function.

The step-sequence function receives the services it may use (gate protocol,
agent-call channel). The content logic and artifact schemas stay inside the workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Union

from runledger.agents.worker import InProcessChannel, WorkerChannel
from runledger.config.schema import Settings
from runledger.contracts.outcome import Outcome
from runledger.contracts.run_schema import RunRecord
from runledger.orchestrator.context import PipelineContext
from runledger.orchestrator.gates import GateProtocol, GateSpec

AgentChannel = Union[WorkerChannel, InProcessChannel]


@dataclass
class WorkflowServices:
    settings: Settings
    gates: GateProtocol
    channel: AgentChannel
    extras: Dict[str, Any] = field(default_factory=dict)


WorkflowFn = Callable[[RunRecord, PipelineContext, WorkflowServices], Outcome]


@dataclass(frozen=True)
class WorkflowDef:
    name: str
    step_order: List[str]
    gates: List[GateSpec]
    run: WorkflowFn

    def __post_init__(self) -> None:
        for gate in self.gates:
            if gate.step not in self.step_order or gate.resume_from not in self.step_order:
                raise ValueError(f"Gate {gate.gate_id} references unknown steps")
