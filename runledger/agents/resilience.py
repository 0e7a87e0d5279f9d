# ==============================
# Structured Call Resilience
# ==============================
"""
validate -> repair -> retry wrapper around one structured agent call.

Protocol (at most three underlying calls):
1. primary call (default mode); Ok -> return
2. Err(ValidationFailure): take the last raw assistant text
   - none -> go to 4
3. one repair call (repair mode, repair_max_turns) asking for a minimal-edit,
   schema-conformant JSON rewrite of that text; Ok -> return
4. one deterministic retry of the original prompt; Err -> SchemaValidationError

Any exception raised by the primary call (transport/infrastructure) propagates
immediately without repair or retry. Every recovery tier is logged, and also
forwarded to the optional `notify` callback (used to write run log events).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel

from runledger.agents.base import AgentMode, AgentReply, BaseAgent
from runledger.agents.validation import Err, Ok, ValidationFailure, check_schema
from runledger.config.schema import Settings
from runledger.errors import RunCancelled, SchemaValidationError, WorkerAborted
from runledger.orchestrator.cancellation import CancelToken

M = TypeVar("M", bound=BaseModel)

Invoke = Callable[[BaseAgent, str, int, AgentMode], AgentReply]
Notify = Callable[[str], None]

logger = logging.getLogger("runledger.resilience")

REPAIR_PROMPT_TEMPLATE = (
    "Your previous response failed JSON/schema validation for the required output schema.\n"
    "Repair it so it conforms exactly.\n\n"
    "Rules:\n"
    "- Return ONLY JSON (no markdown fences)\n"
    "- Do not add extra top-level keys\n"
    "- Prefer minimal edits to preserve meaning\n\n"
    "PREVIOUS OUTPUT:\n"
    "{previous}"
)


def build_repair_prompt(previous_output: str) -> str:
    return REPAIR_PROMPT_TEMPLATE.format(previous=previous_output)


def _direct_invoke(agent: BaseAgent, prompt: str, max_turns: int, mode: AgentMode) -> AgentReply:
    return agent.run(prompt, max_turns=max_turns, mode=mode)


class ResilientCaller:
    """
    One caller serves one thread: a worker request or a single step. `calls`
    counts the underlying agent invocations made through this instance and is
    not synchronised.
    """

    def __init__(self, settings: Settings, *, invoke: Optional[Invoke] = None) -> None:
        self.settings = settings
        self.invoke: Invoke = invoke or _direct_invoke
        self.calls = 0

    def call(
        self,
        agent: BaseAgent,
        prompt: str,
        output_model: Type[M],
        *,
        max_turns: Optional[int] = None,
        run_id: Optional[str] = None,
        step: Optional[str] = None,
        token: Optional[CancelToken] = None,
        notify: Optional[Notify] = None,
    ) -> M:
        turns = max_turns or self.settings.resilience.default_max_turns
        agent_name = getattr(agent, "name", None) or step or agent.__class__.__name__
        extra: Dict[str, Any] = {"run_id": run_id, "step": step, "agent_key": agent_name}

        def record(event: str, message: str, level: int = logging.INFO) -> None:
            logger.log(level, message, extra={**extra, "event": event})
            if notify is not None:
                notify(message)

        # (1) primary: exceptions here are transport failures and propagate as-is
        first = check_schema(output_model, self._invoke(agent, prompt, turns, AgentMode.DEFAULT, token))
        if isinstance(first, Ok):
            return first.value

        failure: ValidationFailure = first.error
        record(
            "schema_validation_failed",
            f'Schema validation failed for "{agent_name}" ({failure.message}). Attempting repair...',
            logging.WARNING,
        )

        # (2)/(3) repair from the last raw assistant text
        if failure.raw_text:
            record("repair_attempt", f'Repairing output for "{agent_name}"')
            try:
                repaired = check_schema(
                    output_model,
                    self._invoke(
                        agent,
                        build_repair_prompt(failure.raw_text),
                        self.settings.resilience.repair_max_turns,
                        AgentMode.REPAIR,
                        token,
                    ),
                )
            except (RunCancelled, WorkerAborted):
                raise
            except Exception as exc:
                repaired = Err(ValidationFailure(message=f"repair call raised: {exc}"))
            if isinstance(repaired, Ok):
                record("repair_succeeded", f'Schema repair succeeded for "{agent_name}".')
                return repaired.value
            record(
                "repair_failed",
                f"Schema repair failed ({repaired.error.message}). Retrying once from scratch...",
                logging.WARNING,
            )
        else:
            record(
                "repair_skipped",
                "Schema validation failed, but raw output could not be extracted. Retrying once from scratch...",
                logging.WARNING,
            )

        # (4) one deterministic retry of the original prompt
        record("deterministic_retry", f'Deterministic retry for "{agent_name}"')
        retried = check_schema(output_model, self._invoke(agent, prompt, turns, AgentMode.DETERMINISTIC, token))
        if isinstance(retried, Ok):
            record("retry_succeeded", f'Schema retry succeeded for "{agent_name}".')
            return retried.value
        record(
            "deterministic_retry_failed",
            f'Schema retry failed for "{agent_name}": {retried.error.message}',
            logging.ERROR,
        )
        raise SchemaValidationError(retried.error)

    def _invoke(
        self,
        agent: BaseAgent,
        prompt: str,
        max_turns: int,
        mode: AgentMode,
        token: Optional[CancelToken],
    ) -> AgentReply:
        if token is not None:
            token.raise_if_aborted()
        self.calls += 1
        return self.invoke(agent, prompt, max_turns, mode)
