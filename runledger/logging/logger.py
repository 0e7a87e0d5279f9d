# ==============================
# Logging Bootstrap
# ==============================
"""
JSON-line logging for the "runledger" logger tree.

- One JSON object per line on stdout: ts, level, logger, msg, plus any
  structured run fields present on the record.
- bootstrap_logger is idempotent: it replaces only the handler it installed.
- Library code logs through logging.getLogger("runledger.<area>").
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from runledger.config.schema import Settings

ROOT_LOGGER = "runledger"
STRUCTURED_FIELDS = ("run_id", "step", "event", "gate_id", "request_id", "agent_key")

_HANDLER_NAME = "runledger-jsonl"


@dataclass(frozen=True)
class LogContext:
    run_id: Optional[str] = None
    step: Optional[str] = None
    gate_id: Optional[str] = None
    request_id: Optional[str] = None


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            {k: getattr(record, k) for k in STRUCTURED_FIELDS if getattr(record, k, None) is not None}
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def bootstrap_logger(settings: Settings) -> logging.Logger:
    """Attach the JSON-line handler to the runledger logger at settings.logging.level."""
    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for existing in [h for h in logger.handlers if h.get_name() == _HANDLER_NAME]:
        logger.removeHandler(existing)
        existing.close()

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JsonLineFormatter())
    logger.addHandler(handler)
    return logger


def with_context(logger: logging.Logger, ctx: LogContext) -> logging.LoggerAdapter:
    """Adapter that stamps the non-empty LogContext fields onto every record."""
    fields = {k: v for k, v in asdict(ctx).items() if v is not None}
    return logging.LoggerAdapter(logger, fields)
