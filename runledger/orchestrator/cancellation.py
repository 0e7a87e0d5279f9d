# ==============================
# Cancellation Token
# ==============================
"""
Per-run abort token owned by the Scheduler.

The same token is handed to the step-sequence function (via PipelineContext)
and to WorkerChannel.call(...), so one cancel() reaches both.
"""

from __future__ import annotations

import threading
from typing import Optional

from runledger.errors import RunCancelled


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = "Cancelled") -> bool:
        """Trigger the token. Returns False if it was already aborted."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "Cancelled")
