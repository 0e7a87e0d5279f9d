# ==============================
# Config Loader (only env reader)
# ==============================
"""
Builds Settings from layered sources.

Layers, lowest first:
- Settings field defaults
- configs/<section>.yaml, one file per Settings section
- secrets/secrets.yaml (the `secrets` section)
- .env entries (RUNLEDGER__SECTION__KEY=value)
- process environment, same key format

Nothing else in runledger/ reads os.environ, .env or secrets.yaml; every other
module receives a validated Settings object. Paths and env are injectable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from runledger.config.schema import Settings

ENV_PREFIX = "RUNLEDGER__"

CONFIG_SECTIONS = (
    "app",
    "storage",
    "scheduler",
    "worker",
    "resilience",
    "retention",
    "slo",
    "logging",
)

_TRUE = {"true", "yes", "on"}
_FALSE = {"false", "no", "off"}


@dataclass(frozen=True)
class ConfigSources:
    root: Path
    configs_dir: Path
    secrets_file: Path
    dotenv_file: Path

    @classmethod
    def resolve(
        cls,
        repo_root: Optional[str] = None,
        configs_dir: Optional[str] = None,
        secrets_file: Optional[str] = None,
        dotenv_file: Optional[str] = None,
    ) -> "ConfigSources":
        root = Path(repo_root or os.getcwd()).expanduser().resolve()
        return cls(
            root=root,
            configs_dir=root / (configs_dir or "configs"),
            secrets_file=Path(secrets_file) if secrets_file else root / "secrets" / "secrets.yaml",
            dotenv_file=Path(dotenv_file) if dotenv_file else root / ".env",
        )


# ==============================
# Layer Readers
# ==============================
def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def _section_layer(path: Path, section: str) -> Dict[str, Any]:
    """A section file may be flat or wrapped in its own section key."""
    data = _load_yaml_mapping(path)
    inner = data.get(section)
    if len(data) == 1 and isinstance(inner, dict):
        data = inner
    return {section: data} if data else {}


def _dotenv_entries(path: Path) -> Dict[str, str]:
    """KEY=VALUE lines; `export ` prefixes, comments and surrounding quotes are dropped."""
    if not path.is_file():
        return {}
    entries: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        name = name.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if name:
            entries[name] = value
    return entries


def coerce_scalar(text: str) -> Any:
    value = text.strip()
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    try:
        return int(value)
    except ValueError:
        pass
    if "." in value:
        try:
            return float(value)
        except ValueError:
            return value
    return value


def _env_layer(env: Dict[str, str]) -> Dict[str, Any]:
    """RUNLEDGER__WORKER__KILL_GRACE_MS=2000 -> {"worker": {"kill_grace_ms": 2000}}"""
    layer: Dict[str, Any] = {}
    for name in sorted(env):
        if not name.startswith(ENV_PREFIX):
            continue
        keys: List[str] = [part.lower() for part in name[len(ENV_PREFIX) :].split("__")]
        if not all(keys):
            continue
        node = layer
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        node[keys[-1]] = coerce_scalar(env[name])
    return layer


def merge_layers(*layers: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge left to right; later layers win key by key."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = merge_layers(current, value)
            else:
                merged[key] = value
    return merged


# ==============================
# Public Loader API
# ==============================
def load_settings(
    *,
    repo_root: Optional[str] = None,
    configs_dir: Optional[str] = None,
    secrets_file: Optional[str] = None,
    dotenv_file: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> Tuple[Settings, Dict[str, Any]]:
    """
    Load and validate Settings.

    Returns (Settings, merged raw dict). `env` defaults to os.environ.
    app.paths.repo_root is always pinned to the resolved root.
    Raises ValueError("Invalid configuration: ...") when validation fails.
    """
    sources = ConfigSources.resolve(repo_root, configs_dir, secrets_file, dotenv_file)
    process_env = dict(os.environ) if env is None else dict(env)

    file_layers = [_section_layer(sources.configs_dir / f"{s}.yaml", s) for s in CONFIG_SECTIONS]
    file_layers.append(_section_layer(sources.secrets_file, "secrets"))

    merged = merge_layers(
        *file_layers,
        _env_layer(_dotenv_entries(sources.dotenv_file)),
        _env_layer(process_env),
        {"app": {"paths": {"repo_root": str(sources.root)}}},
    )

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
    return settings, merged
