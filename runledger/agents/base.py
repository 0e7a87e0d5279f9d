# ==============================
# Base Agent Contract
# ==============================
"""
Base agent contract for runledger/.

Rules:
- Agents do NOT persist and do NOT touch the ledger. Callers own artifacts.
- Agents do NOT read env vars. Configuration is injected by caller.
- Infrastructure failures are raised (AgentTransportError or any other exception).
- A reply whose text does not match the required schema is NOT raised; it is
  returned and classified by runledger/agents/validation.py.

Interface:
- run(prompt, max_turns=..., mode=...) -> AgentReply
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class AgentMode(str, Enum):
    """Execution profile for one underlying call."""
    DEFAULT = "default"
    DETERMINISTIC = "deterministic"
    REPAIR = "repair"


# Model settings applied per mode; agents backed by a real model forward these.
MODE_SETTINGS: Dict[AgentMode, Dict[str, Any]] = {
    AgentMode.DEFAULT: {},
    AgentMode.DETERMINISTIC: {"temperature": 0},
    AgentMode.REPAIR: {"temperature": 0, "tool_choice": "none"},
}


@dataclass(frozen=True)
class AgentReply:
    """
    Raw result of one agent call.

    output_text: last assistant text produced (may be empty).
    turns_exhausted: True when the agent gave up after max_turns without a final answer.
    """
    output_text: str = ""
    turns_exhausted: bool = False


class BaseAgent(ABC):
    """
    Base class for all agents.

    Naming:
- Each concrete agent must provide a stable 'name' used for registry lookups.
    """

    name: str

    def __init__(self, *, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}

    def model_settings(self, mode: AgentMode) -> Dict[str, Any]:
        return {**self.config.get("model_settings", {}), **MODE_SETTINGS[mode]}

    @abstractmethod
    def run(self, prompt: str, *, max_turns: int, mode: AgentMode = AgentMode.DEFAULT) -> AgentReply:
        raise NotImplementedError
