# ==============================
# Agent Registry
# ==============================
"""
Process-wide agent registry.

Design:
- Workflows register agent factories at boot (see workflows/*/agents.py).
- Lookups go by agent key. WorkerRequest.agent_key carries the same key into
  an isolated worker, so registration must happen before a worker is forked.
- Every resolve() builds a fresh agent; registering an instance pins it.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Union

from runledger.agents.base import BaseAgent

AgentFactory = Callable[[], BaseAgent]


class AgentRegistry:
    _factories: Dict[str, AgentFactory] = {}

    @classmethod
    def clear(cls) -> None:
        cls._factories.clear()

    @classmethod
    def register(
        cls,
        key: str,
        agent: Union[AgentFactory, BaseAgent],
        *,
        overwrite: bool = False,
    ) -> None:
        norm = agent_key(key)
        if not overwrite and norm in cls._factories:
            raise ValueError(f"Agent already registered: {key}")
        if isinstance(agent, BaseAgent):
            pinned = agent
            cls._factories[norm] = lambda: pinned
        else:
            cls._factories[norm] = agent

    @classmethod
    def resolve(cls, key: str) -> BaseAgent:
        factory = cls._factories.get(agent_key(key))
        if factory is None:
            raise KeyError(f"Unknown agent: {key}")
        return factory()

    @classmethod
    def has(cls, key: str) -> bool:
        return agent_key(key) in cls._factories

    @classmethod
    def keys(cls) -> List[str]:
        return sorted(cls._factories)


def agent_key(name: str) -> str:
    return name.strip().lower().replace(" ", "_")
