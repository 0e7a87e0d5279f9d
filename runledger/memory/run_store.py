# ==============================
# Run Store (filesystem layout)
# ==============================
"""
On-disk layout for runs.

Layout (under settings.storage.output_root):
  <run_id>/run.json          ledger snapshot
  <run_id>/intermediate/     working artifacts
  <run_id>/final/            allow-listed deliverables

Rules:
- Every write is temp-file-then-os.replace so readers never see a half-written file.
- Artifact names are checked with ensure_safe_artifact_name before any path is built.
- Lookups fall back to the run root for runs written before the split layout.
- No ledger state here; RunLedger decides what to write.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
import zipfile
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from pydantic import ValidationError

from runledger.config.schema import Settings
from runledger.contracts.run_schema import RunRecord
from runledger.utils.naming import ensure_safe_artifact_name

SNAPSHOT_NAME = "run.json"
INTERMEDIATE_DIR = "intermediate"
FINAL_DIR = "final"

logger = logging.getLogger("runledger.store")


class RunStore:
    def __init__(self, *, root: Path, final_artifact_names: Optional[List[str]] = None) -> None:
        self.root = Path(root)
        self.final_artifact_names = frozenset(final_artifact_names or [])

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunStore":
        return cls(
            root=settings.output_root_path(),
            final_artifact_names=list(settings.storage.final_artifact_names),
        )

    # ------------------------------------------------------------------ layout
    def run_dir(self, run_id: str) -> Path:
        return self.root / run_id

    def output_folder(self, run_id: str) -> str:
        return f"{self.root.name}/{run_id}"

    def ensure_run_dirs(self, run_id: str) -> Path:
        base = self.run_dir(run_id)
        (base / INTERMEDIATE_DIR).mkdir(parents=True, exist_ok=True)
        (base / FINAL_DIR).mkdir(parents=True, exist_ok=True)
        return base

    def run_exists(self, run_id: str) -> bool:
        return self.run_dir(run_id).exists()

    def remove_run(self, run_id: str) -> None:
        shutil.rmtree(self.run_dir(run_id), ignore_errors=False)

    # ------------------------------------------------------------------ snapshots
    def write_snapshot(self, run: RunRecord) -> None:
        path = self.run_dir(run.run_id) / SNAPSHOT_NAME
        self._atomic_write_json(path, run.model_dump(mode="json"))

    def read_snapshot(self, run_id: str) -> Optional[RunRecord]:
        path = self.run_dir(run_id) / SNAPSHOT_NAME
        if not path.exists():
            return None
        return RunRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def iter_snapshots(self) -> Iterator[RunRecord]:
        """
        Yield every parseable run snapshot under root.
        Unreadable snapshots are logged and skipped so one bad file does not block boot.
        """
        if not self.root.exists():
            return
        for entry in sorted(self.root.iterdir()):
            snap = entry / SNAPSHOT_NAME
            if not entry.is_dir() or not snap.exists():
                continue
            try:
                yield RunRecord.model_validate_json(snap.read_text(encoding="utf-8"))
            except (OSError, ValidationError, ValueError) as exc:
                logger.warning("skipping unreadable snapshot %s: %s", snap, exc, extra={"run_id": entry.name})

    # ------------------------------------------------------------------ artifacts
    def preferred_artifact_path(self, run_id: str, name: str) -> Path:
        ensure_safe_artifact_name(name)
        sub = FINAL_DIR if name in self.final_artifact_names else INTERMEDIATE_DIR
        return self.run_dir(run_id) / sub / name

    def resolve_artifact(self, run_id: str, name: str) -> Optional[Path]:
        ensure_safe_artifact_name(name)
        base = self.run_dir(run_id)
        candidates = [
            base / name,
            self.preferred_artifact_path(run_id, name),
            base / INTERMEDIATE_DIR / name,
            base / FINAL_DIR / name,
        ]
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def artifact_exists(self, run_id: str, name: str) -> bool:
        return self.resolve_artifact(run_id, name) is not None

    def write_artifact_text(self, run_id: str, name: str, text: str) -> Path:
        path = self.preferred_artifact_path(run_id, name)
        self._atomic_write_bytes(path, text.encode("utf-8"))
        return path

    def write_artifact_json(self, run_id: str, name: str, payload: Any) -> Path:
        path = self.preferred_artifact_path(run_id, name)
        self._atomic_write_json(path, payload)
        return path

    def read_artifact_text(self, run_id: str, name: str) -> Optional[str]:
        path = self.resolve_artifact(run_id, name)
        if path is None:
            return None
        return path.read_text(encoding="utf-8")

    def read_artifact_json(self, run_id: str, name: str) -> Optional[Any]:
        text = self.read_artifact_text(run_id, name)
        if text is None:
            return None
        return json.loads(text)

    def copy_artifact(self, *, src_run_id: str, dst_run_id: str, name: str) -> Path:
        src = self.resolve_artifact(src_run_id, name)
        if src is None:
            raise FileNotFoundError(f"{src_run_id}/{name}")
        dst = self.preferred_artifact_path(dst_run_id, name)
        self._atomic_write_bytes(dst, src.read_bytes())
        return dst

    def list_artifacts(self, run_id: str) -> List[Dict[str, Any]]:
        base = self.run_dir(run_id)
        items: List[Dict[str, Any]] = []
        for location, folder in (("root", base), (INTERMEDIATE_DIR, base / INTERMEDIATE_DIR), (FINAL_DIR, base / FINAL_DIR)):
            if not folder.is_dir():
                continue
            for p in sorted(folder.iterdir()):
                if not p.is_file() or p.name == SNAPSHOT_NAME or ".tmp." in p.name:
                    continue
                stat = p.stat()
                items.append({"name": p.name, "location": location, "size_bytes": stat.st_size, "mtime": stat.st_mtime})
        return items

    def export_zip(self, run_id: str) -> bytes:
        """Deflated zip of the run directory, paths relative to it; temp files are skipped."""
        base = self.run_dir(run_id)
        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for path in sorted(base.rglob("*")):
                if not path.is_file() or ".tmp." in path.name:
                    continue
                try:
                    zf.write(path, path.relative_to(base).as_posix())
                except FileNotFoundError:
                    continue
        return buffer.getvalue()

    # ------------------------------------------------------------------ sizes
    def dir_size(self, path: Path) -> int:
        if not path.exists():
            return 0
        if path.is_file():
            return path.stat().st_size
        total = 0
        for dirpath, _dirnames, filenames in os.walk(path):
            for fname in filenames:
                try:
                    total += (Path(dirpath) / fname).stat().st_size
                except FileNotFoundError:
                    continue
        return total

    def run_size(self, run_id: str) -> int:
        return self.dir_size(self.run_dir(run_id))

    # ------------------------------------------------------------------ generic json (root level)
    def read_root_json(self, name: str) -> Optional[Any]:
        path = self.root / name
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write_root_json(self, name: str, payload: Any) -> Path:
        path = self.root / name
        self._atomic_write_json(path, payload)
        return path

    # ------------------------------------------------------------------ internals
    def _atomic_write_json(self, path: Path, payload: Any) -> None:
        data = json.dumps(payload, indent=2, ensure_ascii=False)
        self._atomic_write_bytes(path, data.encode("utf-8"))

    def _atomic_write_bytes(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}.{threading.get_ident()}.{time.time_ns()}")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()
