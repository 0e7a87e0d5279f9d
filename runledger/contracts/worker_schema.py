# ==============================
# Worker Channel Contracts
# ==============================
"""
Request/response messages exchanged with an isolated worker process.

The parent assigns request_id; replies carrying a different id are ignored.
"""

from __future__ import annotations

import os
import time
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_REQUEST_ID = "unknown"


class WorkerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str = Field(..., min_length=1)
    run_id: str = Field(...)
    step: str = Field(...)
    agent_key: str = Field(..., description="AgentRegistry name resolved inside the worker.")
    prompt: str = Field(...)
    max_turns: int = Field(default=10, ge=1)
    timeout_ms: int = Field(default=120_000, ge=1)
    output_model: Optional[str] = Field(
        default=None,
        description="Dotted path of the pydantic model the output must validate against.",
    )


class WorkerReply(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str = Field(...)
    ok: bool = Field(...)
    output: Any = Field(default=None)
    error: Optional[str] = Field(default=None)
    details: Optional[str] = Field(default=None)


def new_request_id() -> str:
    return f"{int(time.time() * 1000)}-{os.urandom(4).hex()}"


def correlate(request_id: str) -> Callable[[Any], bool]:
    """
    Return a predicate accepting only replies addressed to request_id.
    Works on WorkerReply instances and raw dict payloads.
    """

    def _matches(message: Any) -> bool:
        if isinstance(message, WorkerReply):
            return message.request_id == request_id
        if isinstance(message, dict):
            return message.get("request_id") == request_id
        return False

    return _matches
