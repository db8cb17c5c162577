"""
REST API tests over the ASGI app with an in-test dispatcher.
"""

from uuid import uuid4

import pytest

from buildgate.config import settings
from buildgate.engine import ResultStore
from buildgate.models import FailureReason, JobResult, JobStatus
from buildgate.utils.time import utc_now

OWNER = {"X-Principal-ID": "principal-1"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_create_request_starts_job(client, dispatcher):
    response = await client.post("/v1/requests", json={"prompt_text": "Build a pomodoro timer"}, headers=OWNER)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert len(dispatcher.events) == 1
    event = dispatcher.events[0]
    assert str(event.job_id) == body["job_id"]
    assert event.principal_id == "principal-1"

    job = await client.get(f"/v1/jobs/{body['job_id']}", headers=OWNER)
    assert job.status_code == 200
    assert job.json()["attempt_count"] == 0


@pytest.mark.asyncio
async def test_empty_prompt_rejected(client, dispatcher):
    response = await client.post("/v1/requests", json={"prompt_text": ""}, headers=OWNER)

    assert response.status_code == 422
    assert dispatcher.events == []


@pytest.mark.asyncio
async def test_job_hidden_from_other_principals(client, make_job):
    _, job = await make_job(principal_id="principal-1")

    response = await client.get(f"/v1/jobs/{job.job_id}", headers={"X-Principal-ID": "intruder"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_result_available_once_terminal(client, session_factory, make_job):
    _, job = await make_job()

    pending = await client.get(f"/v1/jobs/{job.job_id}/result", headers=OWNER)
    assert pending.status_code == 404

    await ResultStore(session_factory).finalize(
        JobResult(
            job_id=job.job_id,
            status=JobStatus.FAILED,
            failure_reason=FailureReason.QUOTA_EXHAUSTED,
            error_message=FailureReason.QUOTA_EXHAUSTED.user_message,
            completed_at=utc_now(),
        )
    )

    response = await client.get(f"/v1/jobs/{job.job_id}/result", headers=OWNER)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["failure_reason"] == "quota_exhausted"
    assert body["steps"] == 0

    status = await client.get(f"/v1/jobs/{job.job_id}", headers=OWNER)
    assert status.json()["failure_reason"] == "quota_exhausted"


@pytest.mark.asyncio
async def test_trace_lists_steps(client, session_factory, make_job):
    from buildgate.db.base import get_session
    from buildgate.db.repositories import TraceRepository
    from buildgate.models import StepOutcome

    _, job = await make_job()
    async with get_session(session_factory) as session:
        await TraceRepository(session).append(
            job.job_id, outcome=StepOutcome.OK, tool_invoked="list_files", input={}, output="(empty directory)"
        )

    response = await client.get(f"/v1/jobs/{job.job_id}/trace", headers=OWNER)

    assert response.status_code == 200
    steps = response.json()["steps"]
    assert [s["seq"] for s in steps] == [1]
    assert steps[0]["tool_invoked"] == "list_files"


@pytest.mark.asyncio
async def test_quota_and_plan(client):
    free = await client.get("/v1/quota/someone")
    assert free.json() == {"principal_id": "someone", "plan": "free", "remaining": 1, "allowed": True}

    changed = await client.put("/v1/principals/someone/plan", json={"plan": "pro"})
    assert changed.status_code == 200
    assert changed.json()["plan"] == "pro"

    pro = await client.get("/v1/quota/someone")
    assert pro.json()["remaining"] == 2


@pytest.mark.asyncio
async def test_trigger_unknown_job(client, dispatcher):
    response = await client.post(
        "/v1/events/code-generation",
        json={"job_id": str(uuid4()), "request_id": str(uuid4()), "principal_id": "p"},
    )

    assert response.status_code == 404
    assert dispatcher.events == []


@pytest.mark.asyncio
async def test_trigger_pending_job_is_accepted(client, dispatcher, make_job):
    request, job = await make_job()

    response = await client.post(
        "/v1/events/code-generation",
        json={"job_id": str(job.job_id), "request_id": str(request.request_id), "principal_id": "principal-1"},
    )

    assert response.status_code == 202
    assert response.json()["accepted"] is True
    assert len(dispatcher.events) == 1


@pytest.mark.asyncio
async def test_trigger_terminal_job_is_ignored(client, dispatcher, session_factory, make_job):
    request, job = await make_job()
    await ResultStore(session_factory).finalize(
        JobResult(
            job_id=job.job_id,
            status=JobStatus.FAILED,
            failure_reason=FailureReason.INTERNAL_ERROR,
            completed_at=utc_now(),
        )
    )

    response = await client.post(
        "/v1/events/code-generation",
        json={"job_id": str(job.job_id), "request_id": str(request.request_id), "principal_id": "principal-1"},
    )

    assert response.status_code == 202
    assert response.json() == {"accepted": False, "job_id": str(job.job_id), "status": "failed"}
    assert dispatcher.events == []


@pytest.mark.asyncio
async def test_api_key_required_when_not_insecure(client, monkeypatch):
    monkeypatch.setattr(settings, "allow_insecure_dev", False)
    monkeypatch.setattr(settings, "api_key", "test-key")

    missing = await client.get("/v1/health")
    wrong = await client.get("/v1/health", headers={"Authorization": "Bearer nope"})
    right = await client.get("/v1/health", headers={"X-API-Key": "test-key"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert right.status_code == 200


@pytest.mark.asyncio
async def test_principal_header_required_when_not_insecure(client, monkeypatch):
    monkeypatch.setattr(settings, "allow_insecure_dev", False)
    monkeypatch.setattr(settings, "api_key", "test-key")

    response = await client.post(
        "/v1/requests",
        json={"prompt_text": "Build a blog"},
        headers={"Authorization": "Bearer test-key"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_plan_change_needs_admin_key(client, monkeypatch):
    monkeypatch.setattr(settings, "allow_insecure_dev", False)
    monkeypatch.setattr(settings, "api_key", "test-key")
    caller = {"X-API-Key": "test-key", **OWNER}

    monkeypatch.setattr(settings, "admin_api_key", None)
    disabled = await client.put("/v1/principals/principal-1/plan", json={"plan": "pro"}, headers=caller)

    monkeypatch.setattr(settings, "admin_api_key", "ops-key")
    service_key_only = await client.put(
        "/v1/principals/principal-1/plan", json={"plan": "pro"}, headers=caller
    )
    operator = await client.put(
        "/v1/principals/principal-1/plan",
        json={"plan": "pro"},
        headers={**caller, "X-Admin-Key": "ops-key"},
    )

    assert disabled.status_code == 403
    assert service_key_only.status_code == 403
    assert operator.status_code == 200
    assert operator.json()["plan"] == "pro"
