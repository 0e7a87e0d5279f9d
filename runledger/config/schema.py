# ==============================
# Config Schemas (Pydantic)
# ==============================
"""
Pydantic settings models for runledger/.

Notes:
- No env reads here. No file IO here. Pure types + defaults.
- loader.py builds a single Settings object with precedence merging.
- The Settings object is constructed once at process start and passed into
  RunLedger / Scheduler / WorkerChannel constructors.

Precedence (implemented in loader.py):
env > .env > secrets/secrets.yaml > configs/*.yaml > defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ==============================
# App Settings
# ==============================


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    repo_root: str = Field(default=".", description="Repo root (relative or absolute)")
    configs_dir: str = Field(default="configs", description="Configs directory")
    secrets_dir: str = Field(default="secrets", description="Secrets directory")


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: str = Field(default="local", description="Environment name (local/stage/prod)")
    debug: bool = Field(default=False)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    workflow: str = Field(default="demo", description="Workflow module mounted by gateway/CLI")
    stream_ping_seconds: float = Field(default=15.0, description="Keep-alive interval of the run event stream")
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==============================
# Storage Settings
# ==============================


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    output_root: str = Field(default="output", description="Root directory holding one folder per run")
    final_artifact_names: List[str] = Field(
        default_factory=lambda: ["final_report.json", "final_report.md", "trace.json", "CANCELLED.txt"],
        description="Artifact names routed to final/ (everything else lands in intermediate/).",
    )


# ==============================
# Scheduler / Worker Settings
# ==============================


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    concurrency: int = Field(default=1, description="Max runs executing at once (floored at 1)")
    shutdown_timeout_seconds: float = Field(default=10.0)


class WorkerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Delegate agent calls to an isolated subprocess")
    start_method: str = Field(default="fork", description="multiprocessing start method")
    timeout_ms: int = Field(default=120_000, description="Nominal per-call timeout")
    kill_grace_ms: int = Field(
        default=1_000,
        description="Extra window after timeout_ms before the worker is force-killed.",
    )
    min_deadline_ms: int = Field(default=10_000, description="Floor applied to timeout_ms + kill_grace_ms")
    poll_interval_ms: int = Field(default=50, description="Slice used to observe cancellation while waiting")
    max_output_bytes: int = Field(default=64_000, description="Buffered worker stdout/stderr cap")


# ==============================
# Resilience Settings
# ==============================


class ResilienceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_max_turns: int = Field(default=10)
    repair_max_turns: int = Field(default=4)
    adherence_mode: str = Field(default="strict", description="strict|warn")


# ==============================
# Retention / SLO Settings
# ==============================


class RetentionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keep_last_default: int = Field(default=50)
    keep_last_min: int = Field(default=0)
    keep_last_max: int = Field(default=1000)


class SloConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_threshold_ms: int = Field(default=300_000)
    min_threshold_ms: int = Field(default=5_000)
    max_threshold_ms: int = Field(default=1_800_000)
    policy_file: str = Field(default="slo_policy.json", description="Stored under storage.output_root")
    step_thresholds_ms: Dict[str, int] = Field(default_factory=dict)


# ==============================
# Logging Settings
# ==============================


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    console: bool = Field(default=True, description="Mirror ledger events to logs")


# ==============================
# Secrets Settings
# ==============================


class SecretsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    agent_api_key: Optional[str] = Field(default=None)


# ==============================
# Top-Level Settings
# ==============================


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = Field(default_factory=AppConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    slo: SloConfig = Field(default_factory=SloConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    def repo_root_path(self) -> Path:
        return Path(self.app.paths.repo_root).expanduser().resolve()

    def output_root_path(self) -> Path:
        root = Path(self.storage.output_root).expanduser()
        if not root.is_absolute():
            root = self.repo_root_path() / root
        return root.resolve()
