# ==============================
# Naming Helpers
# ==============================
"""
Slugs, run ids, artifact-name safety checks and timestamps.

Pure functions only; no filesystem access here.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from typing import Optional

from runledger.errors import UnsafeArtifactNameError

RUN_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
RUN_ID_SUFFIX_LEN = 8
RUN_ID_SLUG_MAX = 48
SLUG_MAX = 60

_SAFE_ARTIFACT_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, *, max_len: int = SLUG_MAX) -> str:
    s = _NON_ALNUM_RE.sub("-", text.lower()).strip("-")
    return s[:max_len]


def random_suffix(length: int = RUN_ID_SUFFIX_LEN) -> str:
    return "".join(secrets.choice(RUN_ID_ALPHABET) for _ in range(length))


def make_run_id(topic: str, *, suffix: Optional[str] = None) -> str:
    base = slugify(topic)[:RUN_ID_SLUG_MAX].strip("-") or "untitled"
    return f"{base}-{suffix or random_suffix()}"


def is_safe_artifact_name(name: str) -> bool:
    if not name or "/" in name or "\\" in name or ".." in name:
        return False
    return bool(_SAFE_ARTIFACT_RE.match(name))


def ensure_safe_artifact_name(name: str) -> str:
    if not is_safe_artifact_name(name):
        raise UnsafeArtifactNameError(name)
    return name


# ==============================
# Time Helpers
# ==============================
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
