# ==============================
# Demo Agents
# ==============================
"""
Deterministic agents used by the demo workflow (no model calls).

- DemoDrafterAgent: answers a drafting prompt with DraftOutput JSON.
- SloppyDrafterAgent: answers with malformed output unless called in repair or
  deterministic mode. Exercises the repair path end to end.
"""

from __future__ import annotations

import json
from typing import List, Tuple

from runledger.agents.base import AgentMode, AgentReply, BaseAgent
from runledger.agents.registry import AgentRegistry

DRAFTER_KEY = "demo_drafter"
SLOPPY_DRAFTER_KEY = "demo_sloppy_drafter"

SECTION_MARKER = "- "
TITLE_MARKER = "TOPIC: "


def _parse_prompt(prompt: str) -> Tuple[str, List[str]]:
    title = ""
    sections: List[str] = []
    for line in prompt.splitlines():
        if line.startswith(TITLE_MARKER):
            title = line[len(TITLE_MARKER):].strip()
        elif line.startswith(SECTION_MARKER):
            sections.append(line[len(SECTION_MARKER):].strip())
    return title or "Untitled", sections or ["Summary"]


def render_draft(prompt: str) -> str:
    title, sections = _parse_prompt(prompt)
    return json.dumps(
        {
            "title": title,
            "sections": [{"heading": s, "body": f"{s} for {title}."} for s in sections],
        }
    )


class DemoDrafterAgent(BaseAgent):
    name = DRAFTER_KEY

    def run(self, prompt: str, *, max_turns: int, mode: AgentMode = AgentMode.DEFAULT) -> AgentReply:
        return AgentReply(output_text=render_draft(prompt))


class SloppyDrafterAgent(BaseAgent):
    name = SLOPPY_DRAFTER_KEY

    def run(self, prompt: str, *, max_turns: int, mode: AgentMode = AgentMode.DEFAULT) -> AgentReply:
        if mode == AgentMode.DEFAULT:
            # fenced and missing "sections": fails validation but leaves raw text to repair
            title, _ = _parse_prompt(prompt)
            return AgentReply(output_text=f"```json\n{{\"title\": \"{title}\"}}\n```")
        if mode == AgentMode.REPAIR:
            return AgentReply(output_text=json.dumps({"title": "Repaired", "sections": [{"heading": "Summary"}]}))
        return AgentReply(output_text=render_draft(prompt))


def register_agents() -> None:
    AgentRegistry.register(DRAFTER_KEY, DemoDrafterAgent, overwrite=True)
    AgentRegistry.register(SLOPPY_DRAFTER_KEY, SloppyDrafterAgent, overwrite=True)
