# ==============================
# CLI Entrypoint
# ==============================
"""
CLI for runledger/.

Supported commands:
  runledger list-runs
  runledger status --run-id <id>
  runledger create --topic "Quarterly review" [--settings '{"adherence_mode": "warn"}']
  runledger cancel --run-id <id>
  runledger gates --run-id <id>
  runledger submit --run-id <id> --gate GATE_A_REVIEW --decision approve [--notes "..."]
  runledger resume --run-id <id> [--mode regenerate]
  runledger rerun --run-id <id> --start-from B
  runledger retention [--keep-last 10]
  runledger cleanup --keep-last 10 [--dry-run]
  runledger export --run-id <id> [--out run.zip]

Commands that dispatch work (create, resume, rerun) block until the
scheduler is idle, so the printed run reflects where it stopped (paused at a
gate, done or error). Runs found active on disk at startup are recovered as
interrupted; do not point the CLI at an output root a live server is using.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from runledger.config.loader import load_settings
from runledger.contracts.run_schema import RunOperationResult
from runledger.orchestrator.engine import RunEngine
from runledger.utils.workflow_loader import load_configured_workflow


def _json_load(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(value, dict):
        raise SystemExit("JSON payload must be an object.")
    return value


def _load_payload_arg(payload: Optional[str], payload_file: Optional[str]) -> Dict[str, Any]:
    if payload and payload_file:
        raise SystemExit("Provide only one of --settings or --settings-file.")
    if payload_file:
        return _json_load(Path(payload_file).read_text(encoding="utf-8"))
    if payload:
        return _json_load(payload)
    return {}


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _emit(res: RunOperationResult) -> int:
    _print_json(res.model_dump())
    return 0 if res.ok else 1


def _settle(engine: RunEngine, res: RunOperationResult, run_id: Optional[str], timeout: Optional[float]) -> int:
    """Wait for dispatched work, then print the final view of run_id."""
    if not res.ok or run_id is None:
        return _emit(res)
    engine.wait_idle(timeout)
    return _emit(engine.get_run(run_id=run_id))


def cmd_list_runs(engine: RunEngine) -> int:
    return _emit(engine.list_runs())


def cmd_status(engine: RunEngine, *, run_id: str) -> int:
    return _emit(engine.get_run(run_id=run_id))


def cmd_create(engine: RunEngine, *, topic: str, settings: Dict[str, Any], timeout: Optional[float]) -> int:
    res = engine.create_run(topic=topic, settings=settings)
    run_id = (res.data or {}).get("run_id")
    return _settle(engine, res, run_id, timeout)


def cmd_cancel(engine: RunEngine, *, run_id: str) -> int:
    return _emit(engine.cancel_run(run_id=run_id))


def cmd_gates(engine: RunEngine, *, run_id: str) -> int:
    return _emit(engine.gate_history(run_id=run_id))


def cmd_submit(
    engine: RunEngine,
    *,
    run_id: str,
    gate_id: str,
    decision: str,
    notes: str,
) -> int:
    return _emit(engine.submit_review(run_id=run_id, gate_id=gate_id, status=decision, notes=notes))


def cmd_resume(engine: RunEngine, *, run_id: str, mode: Optional[str], timeout: Optional[float]) -> int:
    res = engine.resume_run(run_id=run_id, mode=mode)
    target = (res.data or {}).get("derived_run_id") or run_id
    return _settle(engine, res, target, timeout)


def cmd_rerun(engine: RunEngine, *, run_id: str, start_from: str, timeout: Optional[float]) -> int:
    res = engine.rerun(run_id=run_id, start_from=start_from)
    return _settle(engine, res, (res.data or {}).get("run_id"), timeout)


def cmd_retention(engine: RunEngine, *, keep_last: Optional[int]) -> int:
    return _emit(engine.retention(keep_last=keep_last))


def cmd_cleanup(engine: RunEngine, *, keep_last: Optional[int], dry_run: bool) -> int:
    return _emit(engine.cleanup(keep_last=keep_last, dry_run=dry_run))


def cmd_export(engine: RunEngine, *, run_id: str, out: Optional[str]) -> int:
    res = engine.export_run(run_id=run_id)
    if not res.ok:
        return _emit(res)
    data = res.data or {}
    target = Path(out) if out else Path.cwd() / data["filename"]
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data["content"])
    _print_json({"ok": True, "data": {"run_id": run_id, "path": str(target), "size_bytes": len(data["content"])}, "error": None})
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="runledger")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list-runs")

    ap_status = sub.add_parser("status")
    ap_status.add_argument("--run-id", required=True)

    ap_create = sub.add_parser("create")
    ap_create.add_argument("--topic", required=True)
    ap_create.add_argument("--settings", help="JSON object string with run settings", default=None)
    ap_create.add_argument("--settings-file", help="Path to JSON file with run settings", default=None)
    ap_create.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the run to settle")

    ap_cancel = sub.add_parser("cancel")
    ap_cancel.add_argument("--run-id", required=True)

    ap_gates = sub.add_parser("gates")
    ap_gates.add_argument("--run-id", required=True)

    ap_submit = sub.add_parser("submit")
    ap_submit.add_argument("--run-id", required=True)
    ap_submit.add_argument("--gate", required=True)
    ap_submit.add_argument("--decision", required=True, choices=["approve", "request_changes", "regenerate"])
    ap_submit.add_argument("--notes", default="")

    ap_resume = sub.add_parser("resume")
    ap_resume.add_argument("--run-id", required=True)
    ap_resume.add_argument("--mode", choices=["resume", "regenerate"], default=None)
    ap_resume.add_argument("--timeout", type=float, default=None)

    ap_rerun = sub.add_parser("rerun")
    ap_rerun.add_argument("--run-id", required=True)
    ap_rerun.add_argument("--start-from", required=True)
    ap_rerun.add_argument("--timeout", type=float, default=None)

    ap_retention = sub.add_parser("retention")
    ap_retention.add_argument("--keep-last", type=int, default=None)

    ap_cleanup = sub.add_parser("cleanup")
    ap_cleanup.add_argument("--keep-last", type=int, default=None)
    ap_cleanup.add_argument("--dry-run", action="store_true")

    ap_export = sub.add_parser("export")
    ap_export.add_argument("--run-id", required=True)
    ap_export.add_argument("--out", default=None, help="Zip path (default: ./run-<id>.zip)")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings, _ = load_settings()
    engine = RunEngine.from_settings(settings, workflow=load_configured_workflow(settings))

    try:
        if args.cmd == "list-runs":
            return cmd_list_runs(engine)
        if args.cmd == "status":
            return cmd_status(engine, run_id=args.run_id)
        if args.cmd == "create":
            return cmd_create(
                engine,
                topic=args.topic,
                settings=_load_payload_arg(args.settings, args.settings_file),
                timeout=args.timeout,
            )
        if args.cmd == "cancel":
            return cmd_cancel(engine, run_id=args.run_id)
        if args.cmd == "gates":
            return cmd_gates(engine, run_id=args.run_id)
        if args.cmd == "submit":
            return cmd_submit(
                engine,
                run_id=args.run_id,
                gate_id=args.gate,
                decision=args.decision,
                notes=args.notes,
            )
        if args.cmd == "resume":
            return cmd_resume(engine, run_id=args.run_id, mode=args.mode, timeout=args.timeout)
        if args.cmd == "rerun":
            return cmd_rerun(engine, run_id=args.run_id, start_from=args.start_from, timeout=args.timeout)
        if args.cmd == "retention":
            return cmd_retention(engine, keep_last=args.keep_last)
        if args.cmd == "cleanup":
            return cmd_cleanup(engine, keep_last=args.keep_last, dry_run=args.dry_run)
        if args.cmd == "export":
            return cmd_export(engine, run_id=args.run_id, out=args.out)
    finally:
        engine.shutdown()

    raise SystemExit("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
