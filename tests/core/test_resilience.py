# ==============================
# Resilient Structured Call Tests
# ==============================
from __future__ import annotations

from typing import List

import pytest

from runledger.agents.base import AgentMode, AgentReply
from runledger.agents.fallback import with_fallback
from runledger.agents.resilience import ResilientCaller
from runledger.agents.validation import Err, Ok, check_schema, model_path, resolve_model
from runledger.config.schema import Settings
from runledger.errors import AgentTransportError, RunCancelled, SchemaValidationError
from runledger.orchestrator.cancellation import CancelToken
from tests.helpers import Answer, ScriptedAgent


def test_check_schema_returns_result_values() -> None:
    ok = check_schema(Answer, AgentReply(output_text='{"answer": "42"}'))
    assert isinstance(ok, Ok) and ok.value.answer == "42"

    wrong = check_schema(Answer, AgentReply(output_text='{"answer": 42, "extra": 1}'))
    assert isinstance(wrong, Err)
    assert wrong.error.raw_text == '{"answer": 42, "extra": 1}'
    assert wrong.error.errors

    empty = check_schema(Answer, AgentReply(output_text="   "))
    assert isinstance(empty, Err) and empty.error.raw_text == ""

    exhausted = check_schema(Answer, AgentReply(output_text="partial", turns_exhausted=True))
    assert isinstance(exhausted, Err)
    assert "Max turns" in exhausted.error.message


def test_fenced_output_is_left_for_repair() -> None:
    fenced = "```json\n{\"answer\": \"42\"}\n```"
    result = check_schema(Answer, AgentReply(output_text=fenced))
    assert isinstance(result, Err)
    assert result.error.raw_text == fenced


def test_model_path_round_trips() -> None:
    assert resolve_model(model_path(Answer)) is Answer
    with pytest.raises(TypeError):
        resolve_model("tests.helpers:make_settings")


def test_first_call_valid_makes_one_call() -> None:
    agent = ScriptedAgent(['{"answer": "yes"}'])
    caller = ResilientCaller(Settings())
    assert caller.call(agent, "q", Answer).answer == "yes"
    assert caller.calls == 1


def test_repairable_output_uses_at_most_two_calls() -> None:
    agent = ScriptedAgent(['```json\n{"answer": "draft"', '{"answer": "fixed"}'])
    notes: List[str] = []
    caller = ResilientCaller(Settings())

    result = caller.call(agent, "q", Answer, run_id="r1", step="B", notify=notes.append)

    assert result.answer == "fixed"
    assert caller.calls == 2
    assert [mode for _, mode in agent.calls] == [AgentMode.DEFAULT, AgentMode.REPAIR]
    repair_prompt = agent.calls[1][0]
    assert "PREVIOUS OUTPUT:" in repair_prompt
    assert '{"answer": "draft"' in repair_prompt
    assert any("Schema repair succeeded" in n for n in notes)


def test_transport_error_propagates_without_retry() -> None:
    agent = ScriptedAgent([AgentTransportError("connection reset"), '{"answer": "never"}'])
    caller = ResilientCaller(Settings())
    with pytest.raises(AgentTransportError):
        caller.call(agent, "q", Answer)
    assert caller.calls == 1


def test_missing_raw_text_skips_repair_and_retries_once() -> None:
    agent = ScriptedAgent(["", '{"answer": "second"}'])
    caller = ResilientCaller(Settings())
    assert caller.call(agent, "q", Answer).answer == "second"
    assert [mode for _, mode in agent.calls] == [AgentMode.DEFAULT, AgentMode.DETERMINISTIC]


def test_failed_repair_falls_back_to_deterministic_retry() -> None:
    agent = ScriptedAgent(["not json", "still not json", '{"answer": "third"}'])
    caller = ResilientCaller(Settings())
    assert caller.call(agent, "q", Answer).answer == "third"
    assert caller.calls == 3
    assert agent.calls[2] == ("q", AgentMode.DETERMINISTIC)


def test_repair_call_raising_still_retries() -> None:
    agent = ScriptedAgent(["not json", RuntimeError("repair crashed"), '{"answer": "ok"}'])
    caller = ResilientCaller(Settings())
    assert caller.call(agent, "q", Answer).answer == "ok"
    assert caller.calls == 3


def test_all_tiers_failing_raises_schema_error() -> None:
    agent = ScriptedAgent(["bad", "bad", "bad", '{"answer": "unused"}'])
    caller = ResilientCaller(Settings())
    with pytest.raises(SchemaValidationError) as info:
        caller.call(agent, "q", Answer)
    assert caller.calls == 3
    assert info.value.failure.raw_text == "bad"


def test_cancelled_token_stops_before_calling() -> None:
    token = CancelToken()
    token.abort("user stop")
    agent = ScriptedAgent(['{"answer": "x"}'])
    caller = ResilientCaller(Settings())
    with pytest.raises(RunCancelled):
        caller.call(agent, "q", Answer, token=token)
    assert agent.calls == []


def test_custom_invoke_is_used() -> None:
    seen: List[AgentMode] = []

    def invoke(agent, prompt, max_turns, mode):  # type: ignore[no-untyped-def]
        seen.append(mode)
        return AgentReply(output_text='{"answer": "via invoke"}')

    caller = ResilientCaller(Settings(), invoke=invoke)
    assert caller.call(ScriptedAgent([]), "q", Answer).answer == "via invoke"
    assert seen == [AgentMode.DEFAULT]


def test_adherence_strict_and_warn() -> None:
    def failing() -> str:
        raise SchemaValidationError("nope")

    with pytest.raises(SchemaValidationError):
        with_fallback(failing, lambda: "fallback", mode="strict", label="draft")

    notes: List[str] = []
    assert with_fallback(failing, lambda: "fallback", mode="warn", label="draft", notify=notes.append) == "fallback"
    assert notes and "deterministic fallback" in notes[0]

    def cancelled() -> str:
        raise RunCancelled("stop")

    with pytest.raises(RunCancelled):
        with_fallback(cancelled, lambda: "fallback", mode="warn", label="draft")
