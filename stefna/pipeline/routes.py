"""
FastAPI routes for the generation worker.

Job Endpoints:
  POST /jobs/submit             - Reserve credits, create job, process in background
  GET  /jobs/status?job_id=     - Job projection (status, progress, result | error)
  GET  /jobs/by-run/{run_id}    - Same projection, looked up by idempotency token

Credit Endpoints:
  POST /credits/reserve         - Reserve credits for an arbitrary action
  POST /credits/finalize        - Commit or refund a reservation
  GET  /credits/balance         - Current balance for a user
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from ..errors import ErrorCode, StefnaError
from ..job_slots import JobSlots
from .models import FinalizeRequest, JobProjection, ReserveRequest, SubmitRequest, SubmitResponse
from .orchestrator import GenerationService

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.INSUFFICIENT_CREDITS: 402,
    ErrorCode.DAILY_CAP_REACHED: 429,
    ErrorCode.INVALID_ACTION: 400,
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DUPLICATE_RUN: 409,
    ErrorCode.DB_ERROR: 503,
    ErrorCode.CAPACITY_EXHAUSTED: 503,
}


def to_http(error: StefnaError) -> HTTPException:
    return HTTPException(status_code=HTTP_STATUS.get(error.code, 500), detail=error.to_detail())


def get_service(request: Request) -> GenerationService:
    return request.app.state.service


def get_ledger(request: Request):
    return request.app.state.ledger


def get_slots(request: Request) -> JobSlots:
    return request.app.state.slots


# ═════════════════════════════════════════════════════════════════════════════
# Jobs Router
# ═════════════════════════════════════════════════════════════════════════════

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


@jobs_router.post("/submit", response_model=SubmitResponse)
def submit_job(
    request: SubmitRequest,
    background_tasks: BackgroundTasks,
    service: GenerationService = Depends(get_service),
    slots: JobSlots = Depends(get_slots),
):
    """
    Idempotent on run_id: a replay returns the existing job and schedules
    nothing.

    Errors:
      - 402 / 429: credits denied, no job created
      - 503: worker at capacity or store unavailable
    """
    # Guard concurrent jobs before anything is reserved
    if not slots.acquire():
        raise HTTPException(
            status_code=503,
            detail={
                "error": ErrorCode.CAPACITY_EXHAUSTED.value,
                "message": f"Server at capacity ({slots.capacity} concurrent jobs). Try again shortly.",
            },
        )

    try:
        outcome = service.submit(request)
    except StefnaError as e:
        slots.release()
        logger.info(f"Submit for run {request.run_id} rejected: {e.code.value}")
        raise to_http(e)
    except Exception:
        slots.release()
        raise

    job = outcome.job
    if outcome.duplicate:
        slots.release()
    else:
        def _run_and_release():
            try:
                service.process(job.id)
            finally:
                slots.release()

        background_tasks.add_task(_run_and_release)

    return SubmitResponse(
        job_id=job.id,
        run_id=job.run_id,
        status=job.status,
        duplicate=outcome.duplicate,
        result_url=job.result_url,
    )


@jobs_router.get("/status", response_model=JobProjection)
def job_status(job_id: str = Query(..., min_length=1), service: GenerationService = Depends(get_service)):
    try:
        return service.projection(job_id)
    except StefnaError as e:
        raise to_http(e)


@jobs_router.get("/by-run/{run_id}", response_model=JobProjection)
def job_by_run(run_id: str, service: GenerationService = Depends(get_service)):
    try:
        return service.projection_by_run(run_id)
    except StefnaError as e:
        raise to_http(e)


# ═════════════════════════════════════════════════════════════════════════════
# Credits Router
# ═════════════════════════════════════════════════════════════════════════════

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.post("/reserve")
def reserve_credits(request: ReserveRequest, ledger=Depends(get_ledger)):
    try:
        result = ledger.reserve(request.user_id, request.request_id, request.action, request.cost)
    except StefnaError as e:
        raise to_http(e)
    return {
        "ok": True,
        "request_id": request.request_id,
        "balance": result.balance,
        "replayed": result.replayed,
    }


@credits_router.post("/finalize")
def finalize_credits(request: FinalizeRequest, ledger=Depends(get_ledger)):
    """Commit or refund; calling twice has the same effect as once."""
    try:
        if request.disposition == "commit":
            applied = ledger.finalize(request.request_id, request.user_id)
        else:
            applied = ledger.refund(request.request_id, request.user_id, request.amount, reason="refund requested")
    except StefnaError as e:
        raise to_http(e)
    return {
        "ok": True,
        "request_id": request.request_id,
        "disposition": request.disposition,
        "applied": applied,
    }


@credits_router.get("/balance")
def credit_balance(user_id: str = Query(..., min_length=1), ledger=Depends(get_ledger)):
    try:
        return {"user_id": user_id, "balance": ledger.balance(user_id)}
    except StefnaError as e:
        raise to_http(e)
