"""
Sync routes for monitoring and operating ledger synchronization.

Provides endpoints for:
- Real-time sync control and full sync jobs
- Status, statistics and health
- Consistency checks and repair
- Failure inspection and manual retry
- Schedule management
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

import structlog

from ledgersync.api.dependencies import get_context
from ledgersync.api.schemas import (
    ConsistencyRepairRequest,
    RetryFailureRequest,
    ScheduleCreate,
    ScheduleUpdate,
    SuccessResponse,
    create_success_response,
)
from ledgersync.core.context import AppContext

logger = structlog.get_logger(__name__)

router = APIRouter()


# Real-time and full sync

@router.post("/realtime/start", response_model=SuccessResponse, summary="Start real-time sync")
async def start_realtime(context: AppContext = Depends(get_context)):
    mode = await context.sync_service.start_realtime_sync()
    logger.info("Real-time sync started via API", mode=mode)
    return create_success_response({"mode": mode}, "Real-time sync started")


@router.post("/realtime/stop", response_model=SuccessResponse, summary="Stop real-time sync")
async def stop_realtime(context: AppContext = Depends(get_context)):
    await context.sync_service.stop_realtime_sync()
    return create_success_response(None, "Real-time sync stopped")


@router.post("/full", response_model=SuccessResponse, summary="Start a background full sync")
async def start_full_sync(context: AppContext = Depends(get_context)):
    job = await context.sync_service.start_full_sync_async()
    message = "Full sync already running" if job["alreadyRunning"] else "Full sync started"
    return create_success_response(job, message)


@router.get("/full/status", response_model=SuccessResponse, summary="Full sync job status")
async def full_sync_status(context: AppContext = Depends(get_context)):
    return create_success_response(context.sync_service.get_full_sync_job_status())


# Status

@router.get("/status", response_model=SuccessResponse, summary="Sync status")
async def sync_status(context: AppContext = Depends(get_context)):
    return create_success_response(context.sync_service.get_sync_status())


@router.get("/stats", response_model=SuccessResponse, summary="Sync statistics")
async def sync_stats(context: AppContext = Depends(get_context)):
    return create_success_response(await context.sync_service.get_sync_stats())


@router.get(
    "/health",
    response_model=SuccessResponse,
    summary="Sync health",
    description="Quick mode bounds the consistency check by a timeout; deep mode runs it in full."
)
async def sync_health(
    deep: bool = Query(default=False),
    context: AppContext = Depends(get_context),
):
    health = await context.health.check_health(deep=deep)
    return create_success_response(health)


# Consistency

@router.get("/consistency", response_model=SuccessResponse, summary="Run a consistency check")
async def check_consistency(
    lookback_days: int = Query(default=30, ge=1, le=365),
    concurrency: int = Query(default=8, ge=1, le=50),
    context: AppContext = Depends(get_context),
):
    report = await context.checker.check(lookback_days, concurrency)
    return create_success_response(report.to_dict())


@router.post("/consistency/repair", response_model=SuccessResponse, summary="Check and repair")
async def repair_consistency(
    request: ConsistencyRepairRequest,
    context: AppContext = Depends(get_context),
):
    report = await context.checker.check(request.lookback_days, request.concurrency)
    repair = await context.checker.repair(report, request.types)
    logger.info("Consistency repair requested via API", fixed=repair.fixed, failed=repair.failed)
    return create_success_response({"report": report.to_dict(), "repair": repair.to_dict()})


# Failures

@router.get("/failures", response_model=SuccessResponse, summary="List sync failures")
async def list_failures(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    context: AppContext = Depends(get_context),
):
    failures = await context.failure_ledger.list_failures(status, limit)
    return create_success_response({
        "failures": [f.to_dict() for f in failures],
        "pending": await context.failure_ledger.count_pending(),
    })


@router.post("/failures/retry", response_model=SuccessResponse, summary="Retry one failure now")
async def retry_failure(
    request: RetryFailureRequest,
    context: AppContext = Depends(get_context),
):
    if request.failure_id is not None:
        result = await context.sync_service.retry_failure(request.failure_id)
    else:
        result = await context.sync_service.retry_entity(request.kind, request.entity_id)
    return create_success_response(result, "Retry succeeded")


@router.post("/payments/{payment_id}/reconcile", response_model=SuccessResponse, summary="Reconcile one payment")
async def reconcile_payment(payment_id: str, context: AppContext = Depends(get_context)):
    result = await context.sync_service.reconcile_payment_posting(payment_id)
    return create_success_response(result)


# Schedules

@router.get("/schedules", response_model=SuccessResponse, summary="List schedules")
async def list_schedules(context: AppContext = Depends(get_context)):
    status = context.scheduler.get_status()
    status["actions"] = sorted(context.scheduler.actions)
    return create_success_response(status)


@router.post("/schedules", response_model=SuccessResponse, summary="Add a schedule")
async def add_schedule(request: ScheduleCreate, context: AppContext = Depends(get_context)):
    descriptor = context.scheduler.add_action_schedule(
        request.name,
        request.cron_expression,
        request.action,
        request.description,
        request.enabled,
    )
    return create_success_response(descriptor.to_dict(), "Schedule added")


# Fixed paths are registered before "/schedules/{name}" routes
@router.post("/schedules/start-all", response_model=SuccessResponse, summary="Start all schedules")
async def start_all_schedules(context: AppContext = Depends(get_context)):
    await context.scheduler.start_all()
    return create_success_response(context.scheduler.get_status(), "Schedules started")


@router.post("/schedules/stop-all", response_model=SuccessResponse, summary="Stop all schedules")
async def stop_all_schedules(context: AppContext = Depends(get_context)):
    await context.scheduler.stop_all()
    return create_success_response(context.scheduler.get_status(), "Schedules stopped")


@router.put("/schedules/{name}", response_model=SuccessResponse, summary="Update a schedule")
async def update_schedule(name: str, request: ScheduleUpdate, context: AppContext = Depends(get_context)):
    descriptor = context.scheduler.update_schedule(
        name,
        cron_expression=request.cron_expression,
        description=request.description,
        enabled=request.enabled,
    )
    return create_success_response(descriptor.to_dict(), "Schedule updated")


@router.delete("/schedules/{name}", response_model=SuccessResponse, summary="Remove a schedule")
async def remove_schedule(name: str, context: AppContext = Depends(get_context)):
    context.scheduler.remove_schedule(name)
    return create_success_response({"name": name}, "Schedule removed")


@router.post("/schedules/{name}/enable", response_model=SuccessResponse, summary="Enable a schedule")
async def enable_schedule(name: str, context: AppContext = Depends(get_context)):
    return create_success_response(context.scheduler.enable_schedule(name).to_dict(), "Schedule enabled")


@router.post("/schedules/{name}/disable", response_model=SuccessResponse, summary="Disable a schedule")
async def disable_schedule(name: str, context: AppContext = Depends(get_context)):
    return create_success_response(context.scheduler.disable_schedule(name).to_dict(), "Schedule disabled")


@router.post("/schedules/{name}/run", response_model=SuccessResponse, summary="Run a schedule now")
async def run_schedule(name: str, context: AppContext = Depends(get_context)):
    result = await context.scheduler.run_now(name)
    message = "Schedule run completed" if result["success"] else "Schedule run failed"
    return SuccessResponse(success=result["success"], data=result, message=message)
