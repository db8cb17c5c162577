"""
Generation orchestrator tests: the job state machine end to end over fake sandbox and model.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeModelClient, final, tool_use
from buildgate.db.base import get_session
from buildgate.db.repositories import JobRepository, TraceRepository
from buildgate.engine import AgentStepRunner, QuotaLedger, SandboxLeaseManager
from buildgate.integrations import ModelError
from buildgate.models import FailureReason, JobStatus, StepOutcome, TriggerEvent
from buildgate.utils.time import utc_now

FINAL = final('{"title": "Todo App", "summary": "Add, tick and delete todos."}')


def _event(request, job, principal_id=None) -> TriggerEvent:
    return TriggerEvent(
        job_id=job.job_id,
        request_id=request.request_id,
        principal_id=principal_id or request.principal_id,
    )


async def _trace(session_factory, job_id):
    async with get_session(session_factory) as session:
        return await TraceRepository(session).list(job_id)


@pytest.mark.asyncio
async def test_happy_path(orchestrator, session_factory, provider, model, make_job):
    request, job = await make_job()
    model.script = [
        tool_use("write_file", path="index.html", content="<h1>Todos</h1>"),
        tool_use("run_terminal_command", command="npx serve -l 3000 &"),
        FINAL,
    ]

    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.SUCCEEDED
    assert finished.attempt_count == 1
    result = await orchestrator.results.get(job.job_id)
    assert result.title == "Todo App"
    assert result.files == {"index.html": "<h1>Todos</h1>"}
    assert result.sandbox_endpoint == "https://3000-sbx-1.sandbox.test"

    trace = await _trace(session_factory, job.job_id)
    assert [e.seq for e in trace] == [1, 2, 3]
    assert [e.outcome for e in trace] == [StepOutcome.OK, StepOutcome.OK, StepOutcome.DONE]
    assert trace[0].tool_invoked == "write_file"

    # The preview stays up; only the lease is given back
    assert provider.killed == []
    assert "sbx-1" in provider.sandboxes
    assert await orchestrator.leases.is_alive(finished.sandbox_lease_id) is False
    assert (await QuotaLedger(session_factory).peek(request.principal_id)).remaining == 0


@pytest.mark.asyncio
async def test_quota_exhausted_fails_without_sandbox(orchestrator, provider, model, make_job):
    model.default = FINAL
    first_request, first_job = await make_job()
    await orchestrator.run(_event(first_request, first_job))
    provider.calls.clear()

    request, job = await make_job()
    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.FAILED
    assert finished.failure_reason == FailureReason.QUOTA_EXHAUSTED
    assert provider.calls == []
    result = await orchestrator.results.get(job.job_id)
    assert "credits" in result.error_message


@pytest.mark.asyncio
async def test_concurrent_jobs_on_free_plan(orchestrator, model, make_job):
    """Two jobs for a one-credit principal at once: exactly one runs."""
    model.default = FINAL
    first = await make_job()
    second = await make_job()

    finished = await asyncio.gather(
        orchestrator.run(_event(*first)),
        orchestrator.run(_event(*second)),
    )

    statuses = sorted(job.status.value for job in finished)
    assert statuses == ["failed", "succeeded"]
    failed = next(job for job in finished if job.status == JobStatus.FAILED)
    assert failed.failure_reason == FailureReason.QUOTA_EXHAUSTED


@pytest.mark.asyncio
async def test_step_budget_exhausted(orchestrator_factory, session_factory, provider, model, make_job):
    request, job = await make_job()
    model.default = tool_use("list_files")
    orchestrator = orchestrator_factory(steps=AgentStepRunner(model, max_steps=3))

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.STEP_BUDGET_EXCEEDED
    assert len(await _trace(session_factory, job.job_id)) == 3
    assert len(model.requests) == 3
    assert provider.killed == ["sbx-1"]


@pytest.mark.asyncio
async def test_unknown_tool_fails_job(orchestrator, provider, model, make_job):
    request, job = await make_job()
    model.script = [tool_use("rm_rf", path="/")]

    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.FAILED
    assert finished.failure_reason == FailureReason.UNKNOWN_TOOL
    assert provider.killed == ["sbx-1"]


@pytest.mark.asyncio
async def test_model_error_fails_job_and_keeps_files(orchestrator, provider, model, make_job):
    request, job = await make_job()
    model.script = [
        tool_use("write_file", path="app.py", content="print(1)"),
        ModelError("HTTP 500", status_code=500),
    ]

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.MODEL_ERROR
    result = await orchestrator.results.get(job.job_id)
    assert result.files == {"app.py": "print(1)"}
    assert result.sandbox_endpoint is None
    assert provider.killed == ["sbx-1"]


@pytest.mark.asyncio
async def test_provisioning_gives_up_after_max_attempts(orchestrator, provider, model, make_job):
    request, job = await make_job()
    provider.create_failures = 3
    model.default = FINAL

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.SANDBOX_UNAVAILABLE
    assert [call for call, _ in provider.calls].count("create") == 3
    assert model.requests == []


@pytest.mark.asyncio
async def test_provisioning_recovers_within_retry_bound(orchestrator, provider, model, make_job):
    request, job = await make_job()
    provider.create_failures = 2
    model.default = FINAL

    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.SUCCEEDED
    assert [call for call, _ in provider.calls].count("create") == 3


@pytest.mark.asyncio
async def test_provider_capacity_fails_immediately(orchestrator, provider, model, make_job):
    request, job = await make_job()
    provider.at_capacity = True

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.SANDBOX_QUOTA_EXCEEDED
    assert [call for call, _ in provider.calls].count("create") == 1


@pytest.mark.asyncio
async def test_duplicate_trigger_is_a_noop(orchestrator, session_factory, provider, model, make_job):
    request, job = await make_job()
    model.default = FINAL
    first = await orchestrator.run(_event(request, job))
    calls = list(provider.calls)

    again = await orchestrator.run(_event(request, job))

    assert again.status == first.status == JobStatus.SUCCEEDED
    assert again.attempt_count == 1
    assert provider.calls == calls
    assert len(await _trace(session_factory, job.job_id)) == 1


@pytest.mark.asyncio
async def test_running_job_resumes_from_trace(orchestrator, session_factory, provider, model, make_job):
    """A job left Running by a crashed worker continues on a fresh sandbox without a new charge."""
    request, job = await make_job()
    async with get_session(session_factory) as session:
        jobs = JobRepository(session)
        await jobs.advance(job.job_id, JobStatus.ADMITTED)
        await jobs.start_running(job.job_id, job.job_id)
        await TraceRepository(session).append(
            job.job_id,
            outcome=StepOutcome.OK,
            tool_invoked="write_file",
            input={"path": "index.html", "content": "<h1>Saved</h1>"},
            output="Wrote 14 characters to index.html",
            call_id="toolu_saved",
        )
    model.script = [FINAL]

    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.SUCCEEDED
    assert finished.attempt_count == 2
    assert provider.sandboxes["sbx-1"] == {"index.html": "<h1>Saved</h1>"}
    assert len(model.requests[0]["messages"]) == 3

    trace = await _trace(session_factory, job.job_id)
    assert [e.seq for e in trace] == [1, 2]
    assert (await QuotaLedger(session_factory).peek(request.principal_id)).remaining == 1


@pytest.mark.asyncio
async def test_recorded_answer_is_stored_without_another_step(
    orchestrator_factory, session_factory, provider, model, make_job
):
    """A run that died after its final step is finished from the trace, even at the step limit."""
    request, job = await make_job()
    async with get_session(session_factory) as session:
        jobs = JobRepository(session)
        await jobs.advance(job.job_id, JobStatus.ADMITTED)
        await jobs.start_running(job.job_id, job.job_id)
        trace = TraceRepository(session)
        await trace.append(
            job.job_id,
            outcome=StepOutcome.OK,
            tool_invoked="write_file",
            input={"path": "index.html", "content": "<h1>Done</h1>"},
            output="Wrote 13 characters to index.html",
            call_id="toolu_write",
        )
        await trace.append(
            job.job_id,
            outcome=StepOutcome.DONE,
            output='{"title": "Clock", "summary": "Shows the time."}',
        )
    orchestrator = orchestrator_factory(steps=AgentStepRunner(model, max_steps=2))

    finished = await orchestrator.run(_event(request, job))

    assert finished.status == JobStatus.SUCCEEDED
    assert model.requests == []
    result = await orchestrator.results.get(job.job_id)
    assert result.title == "Clock"
    assert result.summary == "Shows the time."
    assert result.files == {"index.html": "<h1>Done</h1>"}
    assert result.sandbox_endpoint == "https://3000-sbx-1.sandbox.test"
    assert len(await _trace(session_factory, job.job_id)) == 2


@pytest.mark.asyncio
async def test_too_many_attempts_fails_with_recovery_timeout(
    orchestrator_factory, session_factory, provider, make_job
):
    request, job = await make_job()
    async with get_session(session_factory) as session:
        jobs = JobRepository(session)
        await jobs.advance(job.job_id, JobStatus.ADMITTED)
        for _ in range(3):
            await jobs.start_running(job.job_id, job.job_id)
    orchestrator = orchestrator_factory(max_job_attempts=3)

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.RECOVERY_TIMEOUT
    assert provider.calls == []


@pytest.mark.asyncio
async def test_lease_budget_bounds_the_run(orchestrator_factory, session_factory, provider, model, make_job):
    request, job = await make_job()
    model.default = tool_use("list_files")
    leases = SandboxLeaseManager(session_factory, provider, ttl_seconds=0)
    orchestrator = orchestrator_factory(leases=leases)

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.JOB_TIMEOUT
    assert provider.killed == ["sbx-1"]


class _ClockAdvancingModel(FakeModelClient):
    """Moves the lease clock past the TTL while the model is thinking."""

    def __init__(self, clock, script):
        super().__init__(script)
        self.clock = clock

    async def create_message(self, *, system, messages, tools):
        self.clock[0] += timedelta(hours=1)
        return await super().create_message(system=system, messages=messages, tools=tools)


@pytest.mark.asyncio
async def test_expired_lease_stops_tool_calls(orchestrator_factory, session_factory, provider, make_job):
    request, job = await make_job()
    clock = [utc_now()]
    leases = SandboxLeaseManager(session_factory, provider, ttl_seconds=1800, clock=lambda: clock[0])
    model = _ClockAdvancingModel(clock, [tool_use("write_file", path="a.txt", content="a")])
    orchestrator = orchestrator_factory(leases=leases, steps=AgentStepRunner(model, max_steps=10))

    finished = await orchestrator.run(_event(request, job))

    assert finished.failure_reason == FailureReason.LEASE_EXPIRED
    assert provider.sandboxes["sbx-1"] == {}
    assert await _trace(session_factory, job.job_id) == []


@pytest.mark.asyncio
async def test_trigger_principal_mismatch_charges_request_owner(orchestrator, session_factory, model, make_job):
    request, job = await make_job(principal_id="owner")
    model.default = FINAL

    finished = await orchestrator.run(_event(request, job, principal_id="someone-else"))

    assert finished.status == JobStatus.SUCCEEDED
    ledger = QuotaLedger(session_factory)
    assert (await ledger.peek("owner")).remaining == 0
    assert (await ledger.peek("someone-else")).remaining == 1
