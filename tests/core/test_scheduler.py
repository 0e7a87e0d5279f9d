# ==============================
# Scheduler Tests
# ==============================
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, List, Tuple

import pytest

from runledger.contracts.event_schema import RunEvent, RunEventKind
from runledger.contracts.outcome import Completed, Failed
from runledger.contracts.run_schema import RunRecord, RunStatus, StepStatus
from runledger.errors import GatePause, InvalidInputError, MissingArtifactError, RunConflictError
from runledger.orchestrator.context import PipelineContext
from runledger.orchestrator.ledger import RunLedger
from runledger.orchestrator.scheduler import CANCELLED_MARKER, Scheduler
from tests.helpers import make_settings, wait_for

STEPS = ["A", "B", "C"]


def _build(tmp_path: Path, pipeline: Any, *, concurrency: int = 1) -> Tuple[RunLedger, Scheduler]:
    settings = make_settings(tmp_path, scheduler={"concurrency": concurrency})
    ledger = RunLedger.from_settings(settings)
    return ledger, Scheduler(settings=settings, ledger=ledger, pipeline=pipeline)


def _writing_pipeline(calls: List[Tuple[str, str]]):
    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        for step in run.step_order:
            def body(c: PipelineContext, step: str = step) -> None:
                calls.append((run.run_id, step))
                c.write_json(step, f"{step}_out.json", {"step": step})

            ctx.run_step(step, body)
        return Completed()

    return pipeline


def test_run_completes_and_records_artifacts(tmp_path: Path) -> None:
    calls: List[Tuple[str, str]] = []
    ledger, scheduler = _build(tmp_path, _writing_pipeline(calls))
    run_id = ledger.create_run("topic", step_order=STEPS).run_id

    assert scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.DONE
    assert run.finished_at is not None
    assert [c[1] for c in calls] == STEPS
    assert run.step("B").artifacts == ["B_out.json"]
    assert ledger.store.read_artifact_json(run_id, "C_out.json") == {"step": "C"}


def test_concurrency_limit_queues_extra_runs(tmp_path: Path) -> None:
    release = threading.Event()
    started: List[str] = []

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        started.append(run.run_id)
        release.wait(5)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline, concurrency=1)
    first = ledger.create_run("first", step_order=STEPS).run_id
    second = ledger.create_run("second", step_order=STEPS).run_id
    logs: List[str] = []
    ledger.subscribe(second, lambda e: logs.append(e.payload.get("message", "")))

    scheduler.enqueue(first)
    scheduler.enqueue(second)
    assert wait_for(lambda: started == [first])
    assert scheduler.is_running(first)
    assert scheduler.is_queued(second)
    assert ledger.require_run(second).status == RunStatus.QUEUED
    assert "Queued (max concurrency 1)" in logs

    release.set()
    assert scheduler.wait_idle(5)
    assert started == [first, second]
    assert ledger.require_run(second).status == RunStatus.DONE


def test_two_slots_run_in_parallel(tmp_path: Path) -> None:
    barrier = threading.Barrier(2, timeout=5)

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        barrier.wait()
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline, concurrency=2)
    ids = [ledger.create_run(f"run {i}", step_order=STEPS).run_id for i in range(2)]
    for run_id in ids:
        scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)
    assert all(ledger.require_run(r).status == RunStatus.DONE for r in ids)


def test_cancel_running_run(tmp_path: Path) -> None:
    entered = threading.Event()

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        def body(c: PipelineContext) -> None:
            entered.set()
            c.token.wait(5)
            c.check_cancelled()

        ctx.run_step("A", body)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline)
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    events: List[RunEvent] = []
    ledger.subscribe(run_id, events.append)

    scheduler.enqueue(run_id)
    assert entered.wait(5)
    assert scheduler.cancel(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.ERROR
    assert run.step("A").status == StepStatus.ERROR
    assert run.step("A").error == "Cancelled"
    assert run.step("B").status == StepStatus.QUEUED
    assert ledger.store.artifact_exists(run_id, CANCELLED_MARKER)
    assert all(CANCELLED_MARKER not in rec.artifacts for rec in run.steps.values())
    assert any(e.kind == RunEventKind.ERROR and e.payload.get("message") == "Cancelled" for e in events)


def test_cancel_queued_run(tmp_path: Path) -> None:
    release = threading.Event()

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        release.wait(5)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline, concurrency=1)
    first = ledger.create_run("first", step_order=STEPS).run_id
    second = ledger.create_run("second", step_order=STEPS).run_id
    messages: List[str] = []
    ledger.subscribe(second, lambda e: messages.append(e.payload.get("message", "")))
    scheduler.enqueue(first)
    scheduler.enqueue(second)

    assert scheduler.cancel(second)
    assert not scheduler.is_queued(second)
    run = ledger.require_run(second)
    assert run.status == RunStatus.ERROR
    assert "Cancelled while queued" in messages

    release.set()
    assert scheduler.wait_idle(5)
    assert ledger.require_run(first).status == RunStatus.DONE
    assert not scheduler.cancel(first)


def test_step_failure_fails_run(tmp_path: Path) -> None:
    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        ctx.run_step("A", lambda c: None)

        def explode(c: PipelineContext) -> None:
            raise RuntimeError("model unavailable")

        ctx.run_step("B", explode)
        ctx.run_step("C", lambda c: None)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline)
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.ERROR
    assert run.step("A").status == StepStatus.DONE
    assert run.step("B").status == StepStatus.ERROR
    assert run.step("B").error == "model unavailable"
    assert run.step("C").status == StepStatus.QUEUED


def test_failed_outcome_fails_running_steps(tmp_path: Path) -> None:
    def pipeline(run: RunRecord, ctx: PipelineContext) -> Failed:
        ctx.ledger.start_step(run.run_id, "A")
        return Failed(error="gave up", step="A")

    ledger, scheduler = _build(tmp_path, pipeline)
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.ERROR
    assert run.step("A").status == StepStatus.ERROR
    assert run.step("A").error == "gave up"


def test_raised_gate_pause_is_not_an_error(tmp_path: Path) -> None:
    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        ctx.run_step("A", lambda c: None)
        raise GatePause("G1", "B", "please review")

    ledger, scheduler = _build(tmp_path, pipeline)
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    events: List[RunEvent] = []
    ledger.subscribe(run_id, events.append)
    scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.PAUSED
    assert run.finished_at is None
    assert run.active_gate is not None
    assert (run.active_gate.gate_id, run.active_gate.resume_from) == ("G1", "B")
    assert sum(1 for e in events if e.kind == RunEventKind.GATE_REQUIRED) == 1
    assert not any(e.kind == RunEventKind.ERROR for e in events)


def test_gate_pause_inside_step_finishes_the_step(tmp_path: Path) -> None:
    def review_step(c: PipelineContext) -> None:
        c.write_json("A", "A_outline.json", {"ok": True})
        raise GatePause("G1", "B", "review")

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        ctx.run_step("A", review_step)
        ctx.run_step("B", lambda c: None)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline)
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    events: List[RunEvent] = []
    ledger.subscribe(run_id, events.append)
    scheduler.enqueue(run_id)
    assert scheduler.wait_idle(5)

    run = ledger.require_run(run_id)
    assert run.status == RunStatus.PAUSED
    assert run.step("A").status == StepStatus.DONE
    assert run.step("A").error is None
    assert "A_outline.json" in run.step("A").artifacts
    assert run.step("B").status == StepStatus.QUEUED
    assert run.active_gate is not None and run.active_gate.resume_from == "B"
    assert not any(e.kind == RunEventKind.ERROR for e in events)


def test_enqueue_rejects_unknown_run_and_bad_start(tmp_path: Path) -> None:
    ledger, scheduler = _build(tmp_path, _writing_pipeline([]))
    assert not scheduler.enqueue("missing-run")
    run_id = ledger.create_run("topic", step_order=STEPS).run_id
    with pytest.raises(InvalidInputError):
        scheduler.enqueue(run_id, start_from="Z")


def test_rerun_reuses_parent_steps(tmp_path: Path) -> None:
    calls: List[Tuple[str, str]] = []
    ledger, scheduler = _build(tmp_path, _writing_pipeline(calls))
    parent = ledger.create_run("topic", step_order=STEPS, settings={"mode": "x"}).run_id
    scheduler.enqueue(parent)
    assert scheduler.wait_idle(5)
    calls.clear()

    child = scheduler.rerun(parent, "B")
    assert scheduler.wait_idle(5)

    record = ledger.require_run(child.run_id)
    assert record.status == RunStatus.DONE
    assert record.derived_from is not None
    assert (record.derived_from.run_id, record.derived_from.start_from) == (parent, "B")
    assert record.settings == {"mode": "x"}
    assert record.step("A").status == StepStatus.DONE
    assert record.step("A").artifacts == ["A_out.json"]
    assert ledger.store.read_artifact_json(child.run_id, "A_out.json") == {"step": "A"}
    assert [c[1] for c in calls] == ["B", "C"]


def test_rerun_preconditions(tmp_path: Path) -> None:
    ledger, scheduler = _build(tmp_path, _writing_pipeline([]))
    parent = ledger.create_run("topic", step_order=STEPS).run_id

    with pytest.raises(InvalidInputError):
        scheduler.rerun(parent, "C")
    with pytest.raises(InvalidInputError):
        scheduler.rerun(parent, "Z")

    scheduler.enqueue(parent)
    assert scheduler.wait_idle(5)
    ledger.store.resolve_artifact(parent, "A_out.json").unlink()
    with pytest.raises(MissingArtifactError):
        scheduler.rerun(parent, "C")
    assert len(ledger.list_runs()) == 1


def test_rerun_refuses_running_parent(tmp_path: Path) -> None:
    release = threading.Event()

    def pipeline(run: RunRecord, ctx: PipelineContext) -> Completed:
        release.wait(5)
        return Completed()

    ledger, scheduler = _build(tmp_path, pipeline)
    parent = ledger.create_run("topic", step_order=STEPS).run_id
    scheduler.enqueue(parent)
    assert wait_for(lambda: scheduler.is_running(parent))
    with pytest.raises(RunConflictError):
        scheduler.rerun(parent, "A")
    release.set()
    assert scheduler.wait_idle(5)
