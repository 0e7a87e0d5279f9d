# ==============================
# Retention Manager
# ==============================
"""
Storage footprint reporting and keep-last pruning of terminal runs.

Rules:
- Only terminal runs (done/error) are ever deleted.
- Terminal runs are ordered by started_at descending; the first keep_last survive.
- dry_run computes the same plan without touching disk or the ledger.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from runledger.config.schema import Settings
from runledger.orchestrator.ledger import RunLedger
from runledger.orchestrator.state import RUN_TERMINAL
from runledger.utils.naming import parse_iso, utc_now

logger = logging.getLogger("runledger.retention")

AGE_BUCKETS = ("lt_24h", "between_1d_7d", "between_7d_30d", "gte_30d")


def age_bucket(age_hours: float) -> str:
    if age_hours < 24:
        return "lt_24h"
    if age_hours < 24 * 7:
        return "between_1d_7d"
    if age_hours < 24 * 30:
        return "between_7d_30d"
    return "gte_30d"


class RetentionManager:
    def __init__(self, *, settings: Settings, ledger: RunLedger) -> None:
        self.settings = settings
        self.ledger = ledger
        self.store = ledger.store

    def clamp_keep_last(self, value: Optional[Any]) -> int:
        cfg = self.settings.retention
        if value is None or value == "":
            return cfg.keep_last_default
        try:
            n = int(math.floor(float(value)))
        except (TypeError, ValueError):
            return cfg.keep_last_default
        return max(cfg.keep_last_min, min(cfg.keep_last_max, n))

    def stats(self) -> Dict[str, int]:
        runs = self.ledger.list_runs()
        terminal = sum(1 for r in runs if r.status in RUN_TERMINAL)
        return {"total_runs": len(runs), "terminal_runs": terminal, "active_runs": len(runs) - terminal}

    def analytics(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        ref = now or utc_now()
        buckets: Dict[str, Dict[str, int]] = {b: {"count": 0, "size_bytes": 0} for b in AGE_BUCKETS}
        rows: List[Dict[str, Any]] = []
        total = terminal_bytes = 0
        for run in self.ledger.list_runs():
            size = self.store.run_size(run.run_id)
            started = parse_iso(run.started_at)
            age_hours = max(0.0, (ref - started).total_seconds() / 3600.0) if started else 0.0
            is_terminal = run.status in RUN_TERMINAL
            bucket = age_bucket(age_hours)
            buckets[bucket]["count"] += 1
            buckets[bucket]["size_bytes"] += size
            total += size
            if is_terminal:
                terminal_bytes += size
            rows.append(
                {
                    "run_id": run.run_id,
                    "status": run.status.value,
                    "started_at": run.started_at,
                    "finished_at": run.finished_at,
                    "size_bytes": size,
                    "age_hours": round(age_hours, 3),
                    "terminal": is_terminal,
                }
            )
        rows.sort(key=lambda r: r["size_bytes"], reverse=True)
        return {
            "runs": rows,
            "age_buckets": buckets,
            "totals": {"total_bytes": total, "terminal_bytes": terminal_bytes, "active_bytes": total - terminal_bytes},
        }

    def cleanup_terminal_runs(self, *, keep_last: Any, dry_run: bool = False) -> Dict[str, Any]:
        try:
            keep = max(0, int(math.floor(float(keep_last))))
        except (TypeError, ValueError):
            keep = self.settings.retention.keep_last_default
        terminal = [r for r in self.ledger.list_runs() if r.status in RUN_TERMINAL]
        terminal.sort(key=lambda r: r.started_at, reverse=True)
        kept = terminal[:keep]
        doomed = terminal[keep:]

        deleted_runs: List[Dict[str, Any]] = []
        reclaimed = 0
        for run in doomed:
            size = self.store.run_size(run.run_id)
            if not dry_run:
                if self.store.run_exists(run.run_id):
                    self.store.remove_run(run.run_id)
                self.ledger.evict(run.run_id)
                logger.info("deleted terminal run", extra={"run_id": run.run_id})
            reclaimed += size
            deleted_runs.append(
                {
                    "run_id": run.run_id,
                    "status": run.status.value,
                    "started_at": run.started_at,
                    "size_bytes": size,
                }
            )

        return {
            "keep_last": keep,
            "dry_run": dry_run,
            "scanned_terminal_runs": len(terminal),
            "kept_run_ids": [r.run_id for r in kept],
            "deleted_run_ids": [r["run_id"] for r in deleted_runs],
            "reclaimed_bytes": reclaimed,
            "deleted_runs": deleted_runs,
        }
