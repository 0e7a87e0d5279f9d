# ==============================
# Workflow Loader
# ==============================
"""
Resolve a WorkflowDef by name and register its agents.

Convention:
- workflows/<name>/pipeline.py exposes WORKFLOW (a WorkflowDef)
- optional register_agents() is called before the first run is dispatched,
  so forked workers inherit the registrations
"""

from __future__ import annotations

import importlib
import logging
from types import ModuleType

from runledger.config.schema import Settings
from runledger.orchestrator.workflow import WorkflowDef

WORKFLOWS_PACKAGE = "workflows"

logger = logging.getLogger("runledger.workflows")


def _import_pipeline_module(name: str) -> ModuleType:
    module_name = f"{WORKFLOWS_PACKAGE}.{name}.pipeline"
    try:
        return importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        if exc.name is not None and module_name.startswith(exc.name):
            raise ValueError(f"Unknown workflow '{name}' (expected module {module_name})") from exc
        raise


def load_workflow(name: str) -> WorkflowDef:
    module = _import_pipeline_module(name)
    workflow = getattr(module, "WORKFLOW", None)
    if not isinstance(workflow, WorkflowDef):
        raise ValueError(f"{module.__name__}.WORKFLOW must be a WorkflowDef")
    register = getattr(module, "register_agents", None)
    if callable(register):
        register()
    logger.info("loaded workflow %s (steps=%s)", workflow.name, ",".join(workflow.step_order))
    return workflow


def load_configured_workflow(settings: Settings) -> WorkflowDef:
    return load_workflow(settings.app.workflow)
