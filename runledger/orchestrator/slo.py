# ==============================
# Step SLO Policy
# ==============================
"""
Per-step elapsed-time thresholds and run evaluation.

- Thresholds are clamped to [slo.min_threshold_ms, slo.max_threshold_ms].
- The policy is persisted as <output_root>/<slo.policy_file>.
- An unreadable or invalid policy file falls back to the configured defaults.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from runledger.config.schema import Settings
from runledger.contracts.run_schema import RunRecord, StepStatus
from runledger.errors import InvalidInputError
from runledger.memory.run_store import RunStore
from runledger.utils.naming import now_iso, parse_iso, utc_now

logger = logging.getLogger("runledger.slo")


class StepSloPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    thresholds_ms: Dict[str, int] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=now_iso)


class SloPolicyManager:
    def __init__(self, *, settings: Settings, store: RunStore, step_order: List[str]) -> None:
        self.settings = settings
        self.store = store
        self.step_order = list(step_order)
        self._lock = threading.Lock()
        self._cached: Optional[StepSloPolicy] = None

    def defaults(self) -> Dict[str, int]:
        cfg = self.settings.slo
        base = {step: cfg.default_threshold_ms for step in self.step_order}
        base.update({k: v for k, v in cfg.step_thresholds_ms.items() if k in base})
        return self.normalize(base, base={})

    def normalize(self, overrides: Mapping[str, Any], *, base: Mapping[str, int]) -> Dict[str, int]:
        cfg = self.settings.slo
        out = dict(base)
        for step in self.step_order:
            value = overrides.get(step)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            out[step] = min(cfg.max_threshold_ms, max(cfg.min_threshold_ms, int(round(value))))
        return out

    def load(self) -> StepSloPolicy:
        with self._lock:
            if self._cached is not None:
                return self._cached.model_copy(deep=True)
            policy = StepSloPolicy(thresholds_ms=self.defaults())
            try:
                raw = self.store.read_root_json(self.settings.slo.policy_file)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("unreadable slo policy, using defaults: %s", exc)
                raw = None
            if raw is not None:
                try:
                    stored = StepSloPolicy.model_validate(raw)
                    policy = StepSloPolicy(
                        thresholds_ms=self.normalize(stored.thresholds_ms, base=policy.thresholds_ms),
                        updated_at=stored.updated_at,
                    )
                except ValidationError as exc:
                    logger.warning("invalid slo policy, using defaults: %s", exc)
            self._cached = policy
            return policy.model_copy(deep=True)

    def update(self, overrides: Mapping[str, Any]) -> StepSloPolicy:
        unknown = sorted(set(overrides) - set(self.step_order))
        if unknown:
            raise InvalidInputError(f"Unknown steps in SLO policy: {', '.join(unknown)}", details={"steps": unknown})
        current = self.load()
        policy = StepSloPolicy(thresholds_ms=self.normalize(overrides, base=current.thresholds_ms))
        self.store.write_root_json(self.settings.slo.policy_file, policy.model_dump(mode="json"))
        with self._lock:
            self._cached = policy
        return policy.model_copy(deep=True)

    def evaluate(self, run: RunRecord) -> Dict[str, Any]:
        thresholds = self.load().thresholds_ms
        now = utc_now()
        evaluations: Dict[str, Dict[str, Any]] = {}
        warning_steps: List[str] = []
        for step in run.step_order:
            threshold = thresholds.get(step, self.settings.slo.default_threshold_ms)
            rec = run.steps.get(step)
            started = parse_iso(rec.started_at) if rec else None
            if rec is None or rec.status == StepStatus.QUEUED or started is None:
                evaluations[step] = {"status": "n/a", "threshold_ms": threshold, "elapsed_ms": None}
                continue
            finished = parse_iso(rec.finished_at) or now
            elapsed = max(0, int((finished - started).total_seconds() * 1000))
            status = "warn" if elapsed > threshold else "ok"
            if status == "warn":
                warning_steps.append(step)
            evaluations[step] = {"status": status, "threshold_ms": threshold, "elapsed_ms": elapsed}
        return {"warning_steps": warning_steps, "thresholds_ms": thresholds, "evaluations": evaluations}
