# ==============================
# Shared Test Helpers
# ==============================
from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

from pydantic import BaseModel, ConfigDict

from runledger.agents.base import AgentMode, AgentReply, BaseAgent
from runledger.config.schema import Settings

Reply = Union[str, AgentReply, BaseException]


def make_settings(root: Path, **sections: Dict[str, Any]) -> Settings:
    """Settings rooted at a tmp dir; keyword args override whole config sections."""
    data: Dict[str, Any] = {
        "app": {"paths": {"repo_root": str(root)}},
        "storage": {"output_root": str(root / "output")},
        "logging": {"console": False},
    }
    for name, values in sections.items():
        data[name] = {**data.get(name, {}), **values}
    return Settings.model_validate(data)


def wait_for(predicate: Callable[[], bool], *, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class Answer(BaseModel):
    model_config = ConfigDict(extra="forbid")

    answer: str


class ScriptedAgent(BaseAgent):
    """Replays a fixed list of replies; an exception entry is raised instead."""

    name = "scripted"

    def __init__(self, replies: List[Reply]) -> None:
        super().__init__()
        self.replies = list(replies)
        self.calls: List[Tuple[str, AgentMode]] = []

    def run(self, prompt: str, *, max_turns: int, mode: AgentMode = AgentMode.DEFAULT) -> AgentReply:
        self.calls.append((prompt, mode))
        item = self.replies.pop(0) if self.replies else ""
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, AgentReply):
            return item
        return AgentReply(output_text=item)
