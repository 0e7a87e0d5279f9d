# ==============================
# Run Engine + Demo Workflow Tests
# ==============================
from __future__ import annotations

import io
import zipfile
from typing import Any, Dict, List

import pytest

from runledger.contracts.event_schema import RunEvent, RunEventKind
from runledger.contracts.run_schema import RunStatus, StepStatus
from runledger.errors import RunNotFoundError
from runledger.orchestrator.engine import RunEngine
from workflows.demo.pipeline import DRAFT_ARTIFACT, FINAL_JSON, FINAL_MD, GATE_A_REVIEW, OUTLINE_ARTIFACT


def _create_paused(engine: RunEngine, topic: str = "Sepsis screening", **settings: Any) -> str:
    res = engine.create_run(topic=topic, settings=settings)
    assert res.ok, res.error
    run_id = res.data["run_id"]
    assert engine.wait_idle(10)
    run = engine.get_run(run_id=run_id).data["run"]
    assert run["status"] == "paused"
    assert run["active_gate"]["gate_id"] == GATE_A_REVIEW
    return run_id


def _approve_and_finish(engine: RunEngine, run_id: str) -> Dict[str, Any]:
    assert engine.submit_review(run_id=run_id, gate_id=GATE_A_REVIEW, status="approve").ok
    resumed = engine.resume_run(run_id=run_id)
    assert resumed.ok, resumed.error
    assert resumed.data["start_from"] == "B"
    assert engine.wait_idle(10)
    return engine.get_run(run_id=run_id).data["run"]


def test_demo_workflow_end_to_end(engine: RunEngine) -> None:
    run_id = _create_paused(engine, sections=["Context", "Risks"])
    assert engine.store.read_artifact_json(run_id, OUTLINE_ARTIFACT) == {
        "topic": "Sepsis screening",
        "sections": ["Context", "Risks"],
    }

    run = _approve_and_finish(engine, run_id)
    assert run["status"] == "done"
    assert [run["steps"][s]["status"] for s in ("A", "B", "C")] == ["done", "done", "done"]
    assert run["step_slo"]["warning_steps"] == []
    assert run["is_running"] is False

    final_path = engine.store.resolve_artifact(run_id, FINAL_JSON)
    assert final_path is not None and final_path.parent.name == "final"
    report = engine.store.read_artifact_json(run_id, FINAL_JSON)
    assert report["title"] == "Sepsis screening"
    assert [s["heading"] for s in report["sections"]] == ["Context", "Risks"]
    assert report["fallback_used"] is False
    assert engine.store.read_artifact_text(run_id, FINAL_MD).startswith("# Sepsis screening")


def test_reviewer_notes_reach_the_drafter(engine: RunEngine) -> None:
    run_id = _create_paused(engine)
    engine.submit_review(run_id=run_id, gate_id=GATE_A_REVIEW, status="approve", notes="cite the guideline")
    engine.resume_run(run_id=run_id)
    assert engine.wait_idle(10)
    assert engine.get_run(run_id=run_id).data["run"]["status"] == "done"
    assert engine.store.read_artifact_json(run_id, DRAFT_ARTIFACT)["title"] == "Sepsis screening"


def test_sloppy_drafter_is_repaired(engine: RunEngine) -> None:
    run_id = _create_paused(engine, drafter="demo_sloppy_drafter")
    run = _approve_and_finish(engine, run_id)
    assert run["status"] == "done"
    assert engine.store.read_artifact_json(run_id, DRAFT_ARTIFACT)["title"] == "Repaired"


def test_adherence_warn_uses_fallback_and_strict_fails(engine: RunEngine) -> None:
    warn_id = _create_paused(engine, drafter="missing_agent", adherence_mode="warn")
    run = _approve_and_finish(engine, warn_id)
    assert run["status"] == "done"
    assert engine.store.read_artifact_json(warn_id, FINAL_JSON)["fallback_used"] is True

    strict_id = _create_paused(engine, "Strict topic", drafter="missing_agent", adherence_mode="strict")
    run = _approve_and_finish(engine, strict_id)
    assert run["status"] == "error"
    assert run["steps"]["B"]["status"] == "error"
    assert run["steps"]["C"]["status"] == "queued"


def test_rerun_from_c_reuses_earlier_steps(engine: RunEngine) -> None:
    parent = _create_paused(engine)
    _approve_and_finish(engine, parent)

    res = engine.rerun(run_id=parent, start_from="C")
    assert res.ok, res.error
    assert engine.wait_idle(10)
    child = engine.ledger.require_run(res.data["run_id"])
    assert child.status == RunStatus.DONE
    assert child.derived_from is not None and child.derived_from.run_id == parent
    assert child.step("B").status == StepStatus.DONE
    assert DRAFT_ARTIFACT in child.step("B").artifacts


def test_operation_errors_use_stable_codes(engine: RunEngine) -> None:
    short = engine.create_run(topic="  a ")
    assert not short.ok and short.error.code == "invalid_input"

    missing = engine.get_run(run_id="nope")
    assert not missing.ok and missing.error.code == "not_found"

    run_id = _create_paused(engine)
    cancel = engine.cancel_run(run_id=run_id)
    assert not cancel.ok and cancel.error.code == "conflict"

    resume = engine.resume_run(run_id=run_id)
    assert not resume.ok and resume.error.code == "conflict"

    bad_gate = engine.submit_review(run_id=run_id, gate_id="NOPE", status="approve")
    assert not bad_gate.ok and bad_gate.error.code == "invalid_input"

    bad_name = engine.locate_artifact(run_id=run_id, name="../run.json")
    assert not bad_name.ok and bad_name.error.code == "invalid_input"

    absent = engine.locate_artifact(run_id=run_id, name=FINAL_JSON)
    assert not absent.ok and absent.error.code == "not_found"

    rerun = engine.rerun(run_id=run_id, start_from="C")
    assert not rerun.ok and rerun.error.code == "invalid_input"


def test_gate_history_and_artifacts(engine: RunEngine) -> None:
    run_id = _create_paused(engine)
    engine.submit_review(run_id=run_id, gate_id=GATE_A_REVIEW, status="request_changes", notes="more detail")

    history = engine.gate_history(run_id=run_id).data
    assert history["active_gate"]["awaiting"] == "changes_requested"
    assert history["gates"] == [{"gate_id": GATE_A_REVIEW, "step": "A", "resume_from": "B"}]
    assert history["review"]["latest_by_gate"][GATE_A_REVIEW]["status"] == "request_changes"

    names = {a["name"] for a in engine.list_artifacts(run_id=run_id).data["artifacts"]}
    assert {OUTLINE_ARTIFACT, "GATE_A_REVIEW_REQUIRED.json", "human_review.json"} <= names

    located = engine.locate_artifact(run_id=run_id, name=OUTLINE_ARTIFACT)
    assert located.ok and located.data["path"].endswith(OUTLINE_ARTIFACT)


def test_retention_and_slo_operations(engine: RunEngine) -> None:
    run_id = _create_paused(engine)
    _approve_and_finish(engine, run_id)

    report = engine.retention(keep_last=0).data
    assert report["stats"]["terminal_runs"] == 1
    assert report["preview"]["deleted_run_ids"] == [run_id]
    assert engine.store.run_exists(run_id)

    cleaned = engine.cleanup(keep_last=0, dry_run=False).data
    assert cleaned["deleted_run_ids"] == [run_id]
    assert not engine.get_run(run_id=run_id).ok

    policy = engine.set_slo_policy(thresholds_ms={"B": 1}).data
    assert policy["thresholds_ms"]["B"] == 5_000
    assert engine.get_slo_policy().data["thresholds_ms"]["B"] == 5_000
    assert engine.set_slo_policy(thresholds_ms={"Z": 1}).error.code == "invalid_input"


def test_retention_report_and_manager_are_separate(engine: RunEngine) -> None:
    assert callable(engine.retention)
    assert engine.retention_manager.stats()["total_runs"] == 0
    report = engine.retention()
    assert report.ok
    assert report.data["stats"] == {"total_runs": 0, "terminal_runs": 0, "active_runs": 0}


def test_export_and_event_subscription(engine: RunEngine) -> None:
    run_id = _create_paused(engine)
    assert not engine.is_settled(run_id)

    events: List[RunEvent] = []
    sub = engine.subscribe_events(run_id=run_id, handler=events.append)
    _approve_and_finish(engine, run_id)
    sub.unsubscribe()

    kinds = {e.kind for e in events}
    assert {RunEventKind.GATE_SUBMITTED, RunEventKind.RUN_RESUMED, RunEventKind.STEP_FINISHED} <= kinds
    assert engine.is_settled(run_id)
    assert engine.is_settled("unknown-run")

    exported = engine.export_run(run_id=run_id)
    assert exported.ok
    assert exported.data["filename"] == f"run-{run_id}.zip"
    with zipfile.ZipFile(io.BytesIO(exported.data["content"])) as archive:
        names = archive.namelist()
    assert "run.json" in names
    assert f"final/{FINAL_JSON}" in names
    assert not any(".tmp." in n for n in names)

    assert engine.export_run(run_id="unknown-run").error.code == "not_found"
    with pytest.raises(RunNotFoundError):
        engine.subscribe_events(run_id="unknown-run", handler=events.append)
