# ==============================
# Schema Checking
# ==============================
"""
Explicit Result type for structured agent output.

check_schema(...) never raises for malformed output: it returns Err(ValidationFailure),
which the resilience wrapper matches on. Exceptions are reserved for transport
failures raised by the agent itself.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from runledger.agents.base import AgentReply

T = TypeVar("T")
E = TypeVar("E")
M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class ValidationFailure:
    """
    message: human-readable reason
    raw_text: last assistant text seen before the failure ("" when none was produced)
    errors: pydantic error list when the text parsed but did not conform
    """
    message: str
    raw_text: str = ""
    errors: List[Dict[str, Any]] = field(default_factory=list)


def check_schema(output_model: Type[M], reply: AgentReply) -> Result[M, ValidationFailure]:
    text = (reply.output_text or "").strip()
    if reply.turns_exhausted:
        return Err(ValidationFailure(message="Max turns exceeded before a final output", raw_text=text))
    if not text:
        return Err(ValidationFailure(message="Agent produced no final output"))
    try:
        return Ok(output_model.model_validate_json(text))
    except ValidationError as exc:
        return Err(
            ValidationFailure(
                message=f"Output failed {output_model.__name__} validation ({exc.error_count()} errors)",
                raw_text=text,
                errors=exc.errors(include_url=False),
            )
        )


def resolve_model(dotted: str) -> Type[BaseModel]:
    """Import 'package.module:ClassName' (or dotted 'package.module.ClassName')."""
    if ":" in dotted:
        module_name, attr = dotted.split(":", 1)
    else:
        module_name, _, attr = dotted.rpartition(".")
    model = getattr(importlib.import_module(module_name), attr)
    if not (isinstance(model, type) and issubclass(model, BaseModel)):
        raise TypeError(f"{dotted} is not a pydantic model")
    return model


def model_path(model: Type[BaseModel]) -> str:
    return f"{model.__module__}:{model.__qualname__}"
