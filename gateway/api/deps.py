# ==============================
# API Dependencies / Singletons
# ==============================
from __future__ import annotations

from functools import lru_cache

from runledger.config.loader import load_settings
from runledger.config.schema import Settings
from runledger.orchestrator.engine import RunEngine
from runledger.orchestrator.workflow import WorkflowDef
from runledger.utils.workflow_loader import load_configured_workflow


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings, _ = load_settings()
    return settings


@lru_cache(maxsize=1)
def get_workflow() -> WorkflowDef:
    return load_configured_workflow(get_settings())


@lru_cache(maxsize=1)
def get_engine() -> RunEngine:
    return RunEngine.from_settings(get_settings(), workflow=get_workflow())
