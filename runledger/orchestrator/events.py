# ==============================
# Run Event Channel
# ==============================
"""
Typed per-run observer channel.

Design:
- Event kinds come from the closed RunEventKind enum.
- subscribe(...) returns a Subscription; unsubscribe() is idempotent.
- Publishing with no listeners is a no-op for every kind (errors included).
- A listener that raises is logged; it never breaks the publisher or other listeners.
- Every event is mirrored to the "runledger.events" logger when mirror_to_log is on.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from runledger.contracts.event_schema import RunEvent, RunEventKind

EventHandler = Callable[[RunEvent], None]


class Subscription:
    def __init__(self, channel: "EventChannel", run_id: str, handler: EventHandler) -> None:
        self._channel = channel
        self.run_id = run_id
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._remove(self)

    def __call__(self) -> None:
        self.unsubscribe()


class EventChannel:
    def __init__(self, *, logger: Optional[logging.Logger] = None, mirror_to_log: bool = True) -> None:
        self.logger = logger or logging.getLogger("runledger.events")
        self.mirror_to_log = mirror_to_log
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscription]] = {}

    def subscribe(self, run_id: str, handler: EventHandler) -> Subscription:
        sub = Subscription(self, run_id, handler)
        with self._lock:
            self._subs.setdefault(run_id, []).append(sub)
        return sub

    def listener_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subs.get(run_id, []))

    def publish(self, event: RunEvent) -> None:
        if self.mirror_to_log:
            level = logging.WARNING if event.kind == RunEventKind.ERROR else logging.INFO
            self.logger.log(
                level,
                event.payload.get("message") or event.kind.value,
                extra={"run_id": event.run_id, "step": event.step, "event": event.kind.value},
            )
        with self._lock:
            targets = list(self._subs.get(event.run_id, []))
        for sub in targets:
            try:
                sub.handler(event)
            except Exception:
                self.logger.exception(
                    "event listener failed",
                    extra={"run_id": event.run_id, "event": event.kind.value},
                )

    def drop_run(self, run_id: str) -> None:
        with self._lock:
            subs = self._subs.pop(run_id, [])
        for sub in subs:
            sub._active = False

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.run_id)
            if not subs:
                return
            self._subs[sub.run_id] = [s for s in subs if s is not sub]
            if not self._subs[sub.run_id]:
                del self._subs[sub.run_id]
