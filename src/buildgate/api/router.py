"""REST API router."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate import __version__
from buildgate.api.deps import (
    get_db_session,
    get_db_session_factory,
    get_dispatcher,
    get_principal_id,
    get_quota_ledger,
    get_result_store,
    verify_admin_key,
    verify_api_key,
)
from buildgate.api.schemas import (
    CreateGenerationRequest,
    CreateGenerationResponse,
    HealthResponse,
    JobResponse,
    JobResultResponse,
    JobTraceResponse,
    QuotaResponse,
    SetPlanRequest,
    SetPlanResponse,
    TraceEntryResponse,
    TriggerEventRequest,
    TriggerEventResponse,
)
from buildgate.db.base import get_session
from buildgate.db.repositories import (
    JobRepository,
    PlanRepository,
    RequestRepository,
    TraceRepository,
)
from buildgate.engine import QuotaLedger, ResultStore
from buildgate.models import Job, TriggerEvent
from buildgate.observability.metrics import metrics
from buildgate.tasks.dispatch import JobDispatcher

logger = logging.getLogger("buildgate.api")

router = APIRouter(prefix="/v1", dependencies=[Depends(verify_api_key)])


# ============================================================================
# Health & metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get("/metrics")
async def get_metrics():
    """In-process counters, gauges and histograms."""
    return metrics.snapshot()


# ============================================================================
# Requests & jobs
# ============================================================================


@router.post("/requests", response_model=CreateGenerationResponse, status_code=201)
async def create_request(
    body: CreateGenerationRequest,
    principal_id: str = Depends(get_principal_id),
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Record a generation request, create its job, and start it in the background."""
    async with get_session(factory) as session:
        request = await RequestRepository(session).create(principal_id, body.prompt_text)
        job = await JobRepository(session).create(request.request_id)

    # Committed above, so the background run can see both rows
    dispatcher.submit(
        TriggerEvent(job_id=job.job_id, request_id=request.request_id, principal_id=principal_id)
    )
    metrics.inc_counter("api.requests_created")
    logger.info(f"Request {request.request_id} accepted for {principal_id} as job {job.job_id}")
    return CreateGenerationResponse(
        request_id=request.request_id,
        job_id=job.job_id,
        status=job.status,
    )


@router.post("/events/code-generation", response_model=TriggerEventResponse, status_code=202)
async def trigger_code_generation(
    body: TriggerEventRequest,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """
    Deliver a code-generation trigger.

    Safe to repeat: terminal jobs are left as they are and a job already
    running here is not started twice.
    """
    job = await JobRepository(session).get(body.job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {body.job_id}")

    accepted = not job.is_terminal()
    if accepted:
        dispatcher.submit(
            TriggerEvent(
                job_id=body.job_id,
                request_id=body.request_id,
                principal_id=body.principal_id,
            )
        )
    return TriggerEventResponse(accepted=accepted, job_id=job.job_id, status=job.status)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    principal_id: str = Depends(get_principal_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a job's current status."""
    job = await _get_owned_job(session, job_id, principal_id)
    return JobResponse.from_job(job)


@router.get("/jobs/{job_id}/trace", response_model=JobTraceResponse)
async def get_job_trace(
    job_id: UUID,
    principal_id: str = Depends(get_principal_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Steps executed so far, in order. Available while the job runs."""
    job = await _get_owned_job(session, job_id, principal_id)
    entries = await TraceRepository(session).list(job_id)
    return JobTraceResponse(
        job_id=job.job_id,
        status=job.status,
        steps=[
            TraceEntryResponse(
                seq=entry.seq,
                tool_invoked=entry.tool_invoked,
                input=entry.input,
                output=entry.output,
                outcome=entry.outcome.value,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.get("/jobs/{job_id}/result", response_model=JobResultResponse)
async def get_job_result(
    job_id: UUID,
    principal_id: str = Depends(get_principal_id),
    session: AsyncSession = Depends(get_db_session),
    results: ResultStore = Depends(get_result_store),
):
    """Get the final result. 404 until the job is terminal."""
    job = await _get_owned_job(session, job_id, principal_id)
    result = await results.get(job.job_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} has not finished")

    return JobResultResponse(
        job_id=result.job_id,
        status=result.status,
        title=result.title,
        summary=result.summary,
        files=result.files,
        sandbox_endpoint=result.sandbox_endpoint,
        failure_reason=result.failure_reason,
        error_message=result.error_message,
        steps=len(result.trace),
        completed_at=result.completed_at,
    )


# ============================================================================
# Quota & plans
# ============================================================================


@router.get("/quota/{principal_id}", response_model=QuotaResponse)
async def get_quota(
    principal_id: str,
    quota: QuotaLedger = Depends(get_quota_ledger),
):
    """Pre-flight check: remaining credits and whether a job would be admitted."""
    decision = await quota.peek(principal_id)
    return QuotaResponse(
        principal_id=principal_id,
        plan=decision.plan,
        remaining=decision.remaining,
        allowed=decision.allowed,
    )


@router.put(
    "/principals/{principal_id}/plan",
    response_model=SetPlanResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def set_plan(
    principal_id: str,
    body: SetPlanRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Change a principal's plan (operator only, needs X-Admin-Key).

    The new allotment applies from the next quota window.
    """
    plan = await PlanRepository(session).set(principal_id, body.plan)
    logger.info(f"Plan for {principal_id} set to {plan.value}")
    return SetPlanResponse(principal_id=principal_id, plan=plan)


async def _get_owned_job(session: AsyncSession, job_id: UUID, principal_id: str) -> Job:
    job = await JobRepository(session).get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    request = await RequestRepository(session).get(job.request_id)
    if request is None or request.principal_id != principal_id:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job
