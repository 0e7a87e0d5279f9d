# ==============================
# Step-Sequence Outcome
# ==============================
"""
Tagged result returned by a step-sequence function.

- Completed: every step ran (or was reused); the run becomes done.
- Paused: a gate needs a human decision; the run becomes paused and re-enters
  at resume_from on resume. Not a failure.
- Failed: the run becomes error with the carried message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Completed:
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Paused:
    gate_id: str
    resume_from: str
    message: str = ""


@dataclass(frozen=True)
class Failed:
    error: str
    step: Optional[str] = None
    exc: Optional[BaseException] = None


Outcome = Union[Completed, Paused, Failed]
