# ==============================
# Adherence Fallback
# ==============================
"""
Strict vs. warn handling for agent failures that escaped the resilience wrapper.

- strict: re-raise (the step fails).
- warn: log the failure, emit a run log line, and return a deterministic fallback.

Cancellation is never converted into a fallback.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, TypeVar

from runledger.errors import RunCancelled, WorkerAborted

T = TypeVar("T")

logger = logging.getLogger("runledger.fallback")


class AdherenceMode(str, Enum):
    STRICT = "strict"
    WARN = "warn"


def with_fallback(
    primary: Callable[[], T],
    fallback: Callable[[], T],
    *,
    mode: AdherenceMode | str,
    label: str,
    notify: Optional[Callable[[str], None]] = None,
) -> T:
    try:
        return primary()
    except (RunCancelled, WorkerAborted):
        raise
    except Exception as exc:
        if AdherenceMode(mode) == AdherenceMode.STRICT:
            raise
        message = f"{label} failed ({exc.__class__.__name__}: {exc}); using deterministic fallback"
        logger.warning(message, extra={"event": "adherence_fallback"})
        if notify is not None:
            notify(message)
        return fallback()
