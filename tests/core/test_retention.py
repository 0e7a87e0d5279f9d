# ==============================
# Retention Tests
# ==============================
from __future__ import annotations

from runledger.contracts.run_schema import RunStatus
import runledger.orchestrator.ledger as ledger_mod
from runledger.orchestrator.ledger import RunLedger
from runledger.orchestrator.retention import RetentionManager, age_bucket
from runledger.utils.naming import parse_iso


def _terminal_runs(ledger: RunLedger, monkeypatch):
    monkeypatch.setattr(ledger_mod, "now_iso", lambda: "2026-01-01T00:00:00+00:00")
    older = ledger.create_run("older", step_order=["A"])
    monkeypatch.setattr(ledger_mod, "now_iso", lambda: "2026-01-02T00:00:00+00:00")
    newer = ledger.create_run("newer", step_order=["A"])
    monkeypatch.undo()
    ledger.store.write_artifact_text(older.run_id, "notes.txt", "x" * 100)
    ledger.set_run_status(older.run_id, RunStatus.DONE, finished_at="2026-01-01T01:00:00+00:00")
    ledger.set_run_status(newer.run_id, RunStatus.ERROR, finished_at="2026-01-02T01:00:00+00:00")
    return older.run_id, newer.run_id


def test_dry_run_then_cleanup_removes_only_older(settings, ledger: RunLedger, monkeypatch) -> None:
    older, newer = _terminal_runs(ledger, monkeypatch)
    manager = RetentionManager(settings=settings, ledger=ledger)

    preview = manager.cleanup_terminal_runs(keep_last=1, dry_run=True)
    assert preview["dry_run"] is True
    assert preview["kept_run_ids"] == [newer]
    assert preview["deleted_run_ids"] == [older]
    assert preview["reclaimed_bytes"] > 0
    assert ledger.store.run_exists(older) and ledger.store.run_exists(newer)
    assert ledger.has_run(older)

    result = manager.cleanup_terminal_runs(keep_last=1, dry_run=False)
    assert result["deleted_run_ids"] == [older]
    assert not ledger.store.run_exists(older)
    assert ledger.store.run_exists(newer)
    assert not ledger.has_run(older)
    assert ledger.has_run(newer)


def test_active_runs_are_never_deleted(settings, ledger: RunLedger, monkeypatch) -> None:
    older, newer = _terminal_runs(ledger, monkeypatch)
    active = ledger.create_run("active", step_order=["A"]).run_id
    paused = ledger.create_run("paused", step_order=["A"]).run_id
    ledger.set_run_status(paused, RunStatus.PAUSED)
    manager = RetentionManager(settings=settings, ledger=ledger)

    result = manager.cleanup_terminal_runs(keep_last=0)
    assert sorted(result["deleted_run_ids"]) == sorted([older, newer])
    assert ledger.has_run(active) and ledger.has_run(paused)
    assert manager.stats() == {"total_runs": 2, "terminal_runs": 0, "active_runs": 2}


def test_keep_last_is_clamped(settings, ledger: RunLedger) -> None:
    manager = RetentionManager(settings=settings, ledger=ledger)
    assert manager.clamp_keep_last(None) == 50
    assert manager.clamp_keep_last("abc") == 50
    assert manager.clamp_keep_last(-5) == 0
    assert manager.clamp_keep_last(7.9) == 7
    assert manager.clamp_keep_last(10_000) == 1000


def test_analytics_buckets_and_sizes(settings, ledger: RunLedger, monkeypatch) -> None:
    older, newer = _terminal_runs(ledger, monkeypatch)
    manager = RetentionManager(settings=settings, ledger=ledger)
    now = parse_iso("2026-01-02T12:00:00+00:00")

    report = manager.analytics(now=now)
    assert report["runs"][0]["run_id"] == older
    assert report["age_buckets"]["between_1d_7d"]["count"] == 1
    assert report["age_buckets"]["lt_24h"]["count"] == 1
    assert report["totals"]["total_bytes"] == report["totals"]["terminal_bytes"]
    assert age_bucket(24 * 40) == "gte_30d"
