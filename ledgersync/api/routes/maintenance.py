"""
Maintenance job routes: enqueue and inspect company-scoped jobs.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

import structlog

from ledgersync.api.dependencies import get_context
from ledgersync.api.schemas import MaintenanceJobCreate, SuccessResponse, create_success_response
from ledgersync.core.context import AppContext

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/jobs", response_model=SuccessResponse, summary="Queue a maintenance job")
async def enqueue_job(request: MaintenanceJobCreate, context: AppContext = Depends(get_context)):
    result = await context.maintenance_queue.enqueue(
        request.operation,
        request.company_id,
        requested_by=request.requested_by,
    )
    message = "Job already queued" if result.deduplicated else "Job queued"
    return create_success_response(result.to_dict(), message)


@router.get("/jobs", response_model=SuccessResponse, summary="List a company's jobs")
async def list_jobs(
    company_id: str = Query(..., min_length=1),
    operation: Optional[str] = Query(default=None),
    limit: int = Query(default=20),
    context: AppContext = Depends(get_context),
):
    jobs = await context.maintenance_queue.list_jobs(company_id, operation, limit)
    return create_success_response({"jobs": [j.to_dict() for j in jobs]})


@router.get("/jobs/{job_id}", response_model=SuccessResponse, summary="Get one job")
async def get_job(
    job_id: str,
    company_id: str = Query(..., min_length=1),
    context: AppContext = Depends(get_context),
):
    job = await context.maintenance_queue.get_job(job_id, company_id)
    return create_success_response(job.to_dict())
