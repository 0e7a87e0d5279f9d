# ==============================
# Run Event Stream (SSE)
# ==============================
"""
Server-sent events over the ledger's per-run subscription.

- Ledger events arrive on scheduler threads; RunEventFeed hands them to the
  event loop with call_soon_threadsafe.
- The stream opens with a "log" connect event, sends "ping" after
  ping_seconds of silence, and closes with "end" once the run is settled and
  every queued event was sent.
- The subscription is released whenever the generator stops, including on
  client disconnect.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from runledger.contracts.event_schema import RunEvent
from runledger.orchestrator.events import Subscription

CONNECTED_MESSAGE = "SSE connected"
POLL_SECONDS = 0.25


class ClientConnection(Protocol):
    async def is_disconnected(self) -> bool: ...


def format_sse(event: str, data: Any) -> str:
    body = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {body}\n\n"


class RunEventFeed:
    """Thread-safe bridge from ledger listeners to one asyncio consumer."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop or asyncio.get_running_loop()
        self.queue: "asyncio.Queue[RunEvent]" = asyncio.Queue()

    def push(self, event: RunEvent) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def next(self, timeout: float) -> Optional[RunEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


async def stream_run_events(
    request: ClientConnection,
    feed: RunEventFeed,
    subscription: Subscription,
    *,
    is_settled: Callable[[], bool],
    ping_seconds: float,
) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    try:
        yield format_sse("log", {"message": CONNECTED_MESSAGE})
        last_sent = loop.time()
        while True:
            if await request.is_disconnected():
                break
            event = await feed.next(min(POLL_SECONDS, ping_seconds))
            if event is not None:
                yield format_sse(event.kind.value, event.model_dump_json())
                last_sent = loop.time()
                continue
            if is_settled() and feed.queue.empty():
                yield format_sse("end", {"run_id": subscription.run_id})
                break
            if loop.time() - last_sent >= ping_seconds:
                yield format_sse("ping", {})
                last_sent = loop.time()
    finally:
        subscription.unsubscribe()
