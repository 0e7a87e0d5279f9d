# ==============================
# Testing Fixtures
# ==============================
from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from gateway.api import deps as gateway_deps
from gateway.api.http_app import create_app
from runledger.agents.registry import AgentRegistry
from runledger.agents.worker import InProcessChannel
from runledger.config.schema import Settings
from runledger.orchestrator.engine import RunEngine
from runledger.orchestrator.ledger import RunLedger
from runledger.utils.workflow_loader import load_workflow
from tests.helpers import make_settings


def _reset_deps() -> None:
    gateway_deps.get_engine.cache_clear()
    gateway_deps.get_workflow.cache_clear()
    gateway_deps.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _isolated_agent_registry() -> Iterator[None]:
    AgentRegistry.clear()
    yield
    AgentRegistry.clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def ledger(settings: Settings) -> RunLedger:
    return RunLedger.from_settings(settings)


@pytest.fixture
def engine(settings: Settings) -> Iterator[RunEngine]:
    """Demo-workflow engine with the thread-pool agent channel."""
    eng = RunEngine.from_settings(
        settings,
        workflow=load_workflow("demo"),
        channel=InProcessChannel(settings),
        load_existing=False,
    )
    yield eng
    eng.shutdown()


@pytest.fixture
def app_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """FastAPI test client over the configured (demo) workflow and a tmp output root."""
    monkeypatch.chdir(ROOT)
    monkeypatch.setenv("RUNLEDGER__STORAGE__OUTPUT_ROOT", (tmp_path / "output").as_posix())
    monkeypatch.setenv("RUNLEDGER__LOGGING__CONSOLE", "false")
    _reset_deps()
    client = TestClient(create_app())
    yield client
    client.close()
    if gateway_deps.get_engine.cache_info().currsize:
        gateway_deps.get_engine().shutdown()
    _reset_deps()
