# ==============================
# Run Store & Naming Tests
# ==============================
from __future__ import annotations

import pytest

from runledger.errors import UnsafeArtifactNameError
from runledger.memory.run_store import RunStore
from runledger.utils.naming import is_safe_artifact_name, make_run_id, slugify


def test_slug_and_run_id() -> None:
    assert slugify("  Hello, World!  ") == "hello-world"
    assert make_run_id("Hello World", suffix="abc12345") == "hello-world-abc12345"
    assert make_run_id("!!!", suffix="abc12345") == "untitled-abc12345"
    long_id = make_run_id("x" * 200, suffix="abc12345")
    assert long_id == "x" * 48 + "-abc12345"


@pytest.mark.parametrize(
    "name,ok",
    [
        ("final_report.json", True),
        ("A-outline.v2.json", True),
        ("../secrets.yaml", False),
        ("a/b.json", False),
        ("a\\b.json", False),
        ("has space.txt", False),
        ("", False),
    ],
)
def test_artifact_name_safety(name: str, ok: bool) -> None:
    assert is_safe_artifact_name(name) is ok


def test_final_and_intermediate_routing(tmp_path) -> None:
    store = RunStore(root=tmp_path / "output", final_artifact_names=["final_report.json"])
    store.ensure_run_dirs("run-1")

    final_path = store.write_artifact_json("run-1", "final_report.json", {"ok": True})
    draft_path = store.write_artifact_text("run-1", "draft.md", "# Draft")

    assert final_path.parent.name == "final"
    assert draft_path.parent.name == "intermediate"
    assert store.read_artifact_json("run-1", "final_report.json") == {"ok": True}
    assert store.read_artifact_text("run-1", "draft.md") == "# Draft"
    assert store.read_artifact_text("run-1", "missing.md") is None
    assert {a["name"] for a in store.list_artifacts("run-1")} == {"final_report.json", "draft.md"}
    assert not list((tmp_path / "output" / "run-1").rglob("*.tmp.*"))


def test_legacy_root_artifacts_resolve_first(tmp_path) -> None:
    store = RunStore(root=tmp_path / "output")
    store.ensure_run_dirs("run-1")
    (store.run_dir("run-1") / "legacy.json").write_text('{"legacy": true}', encoding="utf-8")
    store.write_artifact_json("run-1", "legacy.json", {"legacy": False})
    assert store.read_artifact_json("run-1", "legacy.json") == {"legacy": True}


def test_copy_artifact_between_runs(tmp_path) -> None:
    store = RunStore(root=tmp_path / "output")
    store.ensure_run_dirs("parent")
    store.ensure_run_dirs("child")
    store.write_artifact_text("parent", "notes.txt", "hello")
    store.copy_artifact(src_run_id="parent", dst_run_id="child", name="notes.txt")
    assert store.read_artifact_text("child", "notes.txt") == "hello"
    with pytest.raises(FileNotFoundError):
        store.copy_artifact(src_run_id="parent", dst_run_id="child", name="nope.txt")


def test_unsafe_names_never_touch_disk(tmp_path) -> None:
    store = RunStore(root=tmp_path / "output")
    with pytest.raises(UnsafeArtifactNameError):
        store.write_artifact_text("run-1", "../escape.txt", "x")
    with pytest.raises(UnsafeArtifactNameError):
        store.resolve_artifact("run-1", "a/b.txt")
    assert not (tmp_path / "escape.txt").exists()
