"""
Agent step runner tests: step classification, budget, conversation rebuild.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import FakeModelClient, final, tool_use
from buildgate.engine import AgentStepRunner
from buildgate.engine.steps import build_messages, parse_final_output
from buildgate.integrations import CircuitBreakerOpen, ModelError, ModelResponse
from buildgate.models import (
    Continue,
    Done,
    SandboxLease,
    StepError,
    StepErrorKind,
    StepOutcome,
    StepTraceEntry,
    ToolCall,
)
from buildgate.utils.time import utc_now


def _lease() -> SandboxLease:
    return SandboxLease(
        lease_id=uuid4(),
        job_id=uuid4(),
        created_at=utc_now(),
        ttl_seconds=1800,
        endpoint_ref="sbx-1",
    )


def _entry(seq: int, tool: str | None = None, outcome=StepOutcome.OK, **fields) -> StepTraceEntry:
    return StepTraceEntry(
        seq=seq,
        tool_invoked=tool,
        outcome=outcome,
        created_at=utc_now() - timedelta(seconds=60 - seq),
        **fields,
    )


@pytest.mark.asyncio
async def test_tool_call_is_returned():
    model = FakeModelClient([tool_use("write_file", call_id="toolu_1", path="a.py", content="x")])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, ToolCall)
    assert step.name == "write_file"
    assert step.args == {"path": "a.py", "content": "x"}
    assert step.call_id == "toolu_1"


@pytest.mark.asyncio
async def test_unknown_tool_is_a_step_error():
    model = FakeModelClient([tool_use("delete_everything", path="/")])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, StepError)
    assert step.kind == StepErrorKind.UNKNOWN_TOOL
    assert "delete_everything" in step.detail


@pytest.mark.asyncio
async def test_budget_exhausted_without_calling_model():
    model = FakeModelClient([final("done")])
    trace = [_entry(i, "list_files", output="") for i in range(1, 4)]

    step = await AgentStepRunner(model, max_steps=3).run_step(_lease(), trace, "Build an app")

    assert isinstance(step, StepError)
    assert step.kind == StepErrorKind.STEP_BUDGET_EXCEEDED
    assert model.requests == []


@pytest.mark.asyncio
async def test_final_answer_is_done():
    model = FakeModelClient([final('{"title": "Todo App", "summary": "Add and tick off todos."}')])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build a todo app")

    assert isinstance(step, Done)
    assert step.final_output.title == "Todo App"
    assert step.final_output.summary == "Add and tick off todos."


@pytest.mark.asyncio
async def test_truncated_turn_is_continue():
    model = FakeModelClient([ModelResponse(content=[{"type": "text", "text": "Half"}], stop_reason="max_tokens")])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, Continue)
    assert step.partial_output == "Half"


@pytest.mark.asyncio
async def test_model_failure_is_model_error():
    model = FakeModelClient([ModelError("HTTP 500", status_code=500)])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, StepError)
    assert step.kind == StepErrorKind.MODEL_ERROR


@pytest.mark.asyncio
async def test_open_circuit_is_model_error():
    model = FakeModelClient([CircuitBreakerOpen("model", 30)])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, StepError)
    assert step.kind == StepErrorKind.MODEL_ERROR


@pytest.mark.asyncio
async def test_empty_turn_is_model_error():
    model = FakeModelClient([ModelResponse(content=[], stop_reason="end_turn")])

    step = await AgentStepRunner(model).run_step(_lease(), [], "Build an app")

    assert isinstance(step, StepError)
    assert step.kind == StepErrorKind.MODEL_ERROR


def test_messages_pair_tool_calls_with_results():
    trace = [
        _entry(1, "write_file", input={"path": "a.py", "content": "x"}, output="Wrote 1", call_id="t1"),
        _entry(2, "run_terminal_command", outcome=StepOutcome.ERROR, input={"command": "boom"}, output="exit_code: 1"),
        _entry(3, None, outcome=StepOutcome.CONTINUE, output="thinking"),
    ]

    messages = build_messages("Build an app", trace)

    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user", "assistant", "user"]
    assert messages[1]["content"][0]["id"] == "t1"
    assert messages[2]["content"][0]["tool_use_id"] == "t1"
    assert messages[2]["content"][0]["is_error"] is False
    assert messages[3]["content"][0]["id"] == "step_2"
    assert messages[4]["content"][0]["is_error"] is True
    assert messages[5]["content"] == "thinking"


def test_final_output_falls_back_to_first_line():
    output = parse_final_output("# Weather Dashboard\nShows a forecast for your city.")

    assert output.title == "Weather Dashboard"
    assert "forecast" in output.summary


def test_final_output_reads_fenced_json():
    output = parse_final_output('```json\n{"title": "Notes", "summary": "Markdown notes."}\n```')

    assert output.title == "Notes"
    assert output.summary == "Markdown notes."
