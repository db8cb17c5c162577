"""
Sandbox tool executor tests.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from buildgate.engine import LeaseExpired, SandboxToolExecutor
from buildgate.integrations import CommandResult
from buildgate.models import SandboxLease, StepOutcome, ToolCall
from buildgate.utils.time import utc_now


@pytest_asyncio.fixture
async def lease(lease_manager, make_job):
    _, job = await make_job()
    return await lease_manager.acquire(job.job_id)


@pytest.mark.asyncio
async def test_write_then_read_file(tool_executor, lease):
    written = await tool_executor.execute(
        lease, ToolCall(name="write_file", args={"path": "app.py", "content": "print('hi')"})
    )
    read = await tool_executor.execute(lease, ToolCall(name="read_file", args={"path": "app.py"}))

    assert written.outcome == StepOutcome.OK
    assert read.outcome == StepOutcome.OK
    assert read.output == "print('hi')"


@pytest.mark.asyncio
async def test_list_files(tool_executor, provider, lease):
    provider.sandboxes[lease.endpoint_ref].update({"a.txt": "", "b.txt": ""})

    outcome = await tool_executor.execute(lease, ToolCall(name="list_files", args={}))

    assert outcome.output.splitlines() == ["a.txt", "b.txt"]


@pytest.mark.asyncio
async def test_expired_lease_rejected_before_touching_sandbox(tool_executor, provider):
    expired = SandboxLease(
        lease_id=uuid4(),
        job_id=uuid4(),
        created_at=utc_now() - timedelta(minutes=31),
        ttl_seconds=1800,
        endpoint_ref="sbx-stale",
    )

    with pytest.raises(LeaseExpired):
        await tool_executor.execute(expired, ToolCall(name="read_file", args={"path": "x"}))

    assert provider.calls == []


@pytest.mark.asyncio
async def test_released_lease_rejected(tool_executor, provider):
    released = SandboxLease(
        lease_id=uuid4(),
        job_id=uuid4(),
        created_at=utc_now(),
        ttl_seconds=1800,
        endpoint_ref="sbx-gone",
        released_at=utc_now(),
    )

    with pytest.raises(LeaseExpired):
        await tool_executor.execute(released, ToolCall(name="list_files", args={}))

    assert provider.calls == []


@pytest.mark.asyncio
async def test_missing_argument_is_an_error_outcome(tool_executor, lease):
    outcome = await tool_executor.execute(lease, ToolCall(name="write_file", args={"path": "x.py"}))

    assert outcome.outcome == StepOutcome.ERROR
    assert "content" in outcome.output


@pytest.mark.asyncio
async def test_failed_command_reports_exit_code(tool_executor, provider, lease):
    provider.command_results["npm test"] = CommandResult(stdout="", stderr="1 failing", exit_code=1)

    outcome = await tool_executor.execute(
        lease, ToolCall(name="run_terminal_command", args={"command": "npm test"})
    )

    assert outcome.outcome == StepOutcome.ERROR
    assert "exit_code: 1" in outcome.output
    assert "1 failing" in outcome.output


@pytest.mark.asyncio
async def test_tool_call_timeout(provider, lease):
    executor = SandboxToolExecutor(provider, timeout_seconds=0.05)
    provider.command_delay = 1.0

    outcome = await executor.execute(
        lease, ToolCall(name="run_terminal_command", args={"command": "sleep 60"})
    )

    assert outcome.outcome == StepOutcome.TIMEOUT


@pytest.mark.asyncio
async def test_long_output_is_truncated(provider, lease):
    executor = SandboxToolExecutor(provider, max_output_chars=100)
    provider.sandboxes[lease.endpoint_ref]["big.txt"] = "x" * 500

    outcome = await executor.execute(lease, ToolCall(name="read_file", args={"path": "big.txt"}))

    assert outcome.output.startswith("x" * 100)
    assert "truncated 400 characters" in outcome.output


@pytest.mark.asyncio
async def test_restore_files_writes_into_sandbox(tool_executor, provider, lease):
    await tool_executor.restore_files(lease, {"index.html": "<h1>hi</h1>", "app.js": "1"})

    assert provider.sandboxes[lease.endpoint_ref] == {"index.html": "<h1>hi</h1>", "app.js": "1"}
