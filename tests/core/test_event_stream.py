# ==============================
# Run Event Stream Tests
# ==============================
from __future__ import annotations

import asyncio
import json
from typing import List, Optional, Tuple

from gateway.api.event_stream import CONNECTED_MESSAGE, RunEventFeed, format_sse, stream_run_events
from runledger.orchestrator.events import Subscription
from runledger.orchestrator.ledger import RunLedger


class _Client:
    def __init__(self, disconnect_after: Optional[int] = None) -> None:
        self.disconnect_after = disconnect_after
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.disconnect_after is not None and self.checks > self.disconnect_after


def _parse(chunk: str) -> Tuple[str, dict]:
    event_line, data_line = chunk.strip().split("\n")
    return event_line[len("event: ") :], json.loads(data_line[len("data: ") :])


def test_format_sse_frames_json() -> None:
    assert format_sse("ping", {}) == "event: ping\ndata: {}\n\n"
    assert format_sse("log", '{"a": 1}') == 'event: log\ndata: {"a": 1}\n\n'


def test_stream_relays_ledger_events_and_ends_when_settled(ledger: RunLedger) -> None:
    run_id = ledger.create_run("topic", step_order=["A", "B"]).run_id

    async def _collect() -> Tuple[List[str], Subscription]:
        feed = RunEventFeed()
        sub = ledger.subscribe(run_id, feed.push)
        ledger.log(run_id, "hello from A", step="A")
        chunks = [
            c
            async for c in stream_run_events(
                _Client(), feed, sub, is_settled=lambda: True, ping_seconds=5.0
            )
        ]
        return chunks, sub

    chunks, sub = asyncio.run(_collect())
    frames = [_parse(c) for c in chunks]

    assert frames[0] == ("log", {"message": CONNECTED_MESSAGE})
    kind, payload = frames[1]
    assert kind == "log"
    assert payload["payload"]["message"] == "hello from A"
    assert payload["step"] == "A"
    assert frames[-1] == ("end", {"run_id": run_id})
    assert not sub.active
    assert ledger.events.listener_count(run_id) == 0


def test_stream_pings_and_unsubscribes_on_disconnect(ledger: RunLedger) -> None:
    run_id = ledger.create_run("topic", step_order=["A"]).run_id

    async def _collect() -> Tuple[List[str], Subscription]:
        feed = RunEventFeed()
        sub = ledger.subscribe(run_id, feed.push)
        chunks = [
            c
            async for c in stream_run_events(
                _Client(disconnect_after=6), feed, sub, is_settled=lambda: False, ping_seconds=0.02
            )
        ]
        return chunks, sub

    chunks, sub = asyncio.run(_collect())
    kinds = [_parse(c)[0] for c in chunks]

    assert kinds[0] == "log"
    assert "ping" in kinds
    assert "end" not in kinds
    assert not sub.active
    assert ledger.events.listener_count(run_id) == 0
