"""
Test the HTTP API: envelope, error mapping and health reporting.
"""

import asyncio

import httpx
import pytest

from ledgersync.main import create_app
from ledgersync.models.sync_failure import EntityKind

from conftest import seed_basic

PREFIX = "/api/v1"


@pytest.fixture
async def client(context):
    app = create_app(context=context)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_root_and_store_health(client):
    root = await client.get("/")
    assert root.status_code == 200
    assert root.json()["success"] is True

    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "healthy", "databases": {"operational": True, "ledger": True}}


@pytest.mark.asyncio
async def test_reconcile_payment_endpoint(client, context):
    await seed_basic(context)

    response = await client.post(f"{PREFIX}/sync/payments/pay-1/reconcile")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["commissionAppended"] is True
    assert data["ownerIncomeAppended"] is True


@pytest.mark.asyncio
async def test_not_found_maps_to_404(client):
    response = await client.post(f"{PREFIX}/sync/payments/pay-missing/reconcile")

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"

    response = await client.post(f"{PREFIX}/sync/schedules/no-such-schedule/run")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_validation_errors_map_to_400(client):
    response = await client.post(f"{PREFIX}/sync/schedules", json={
        "name": "nightly",
        "cron_expression": "not a cron",
        "action": "daily_sync",
    })
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"

    response = await client.post(f"{PREFIX}/maintenance/jobs", json={
        "operation": "drop_all_ledgers",
        "company_id": "co-1",
    })
    assert response.status_code == 400

    # Request body shape errors are rejected before reaching the engine
    response = await client.post(f"{PREFIX}/sync/failures/retry", json={"kind": "payment"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_schedule_management(client):
    created = await client.post(f"{PREFIX}/sync/schedules", json={
        "name": "nightly_full",
        "cron_expression": "30 1 * * *",
        "action": "daily_sync",
    })
    assert created.status_code == 200
    assert created.json()["data"]["cronExpression"] == "30 1 * * *"

    disabled = await client.post(f"{PREFIX}/sync/schedules/nightly_full/disable")
    assert disabled.json()["data"]["enabled"] is False

    listing = (await client.get(f"{PREFIX}/sync/schedules")).json()["data"]
    assert "daily_sync" in listing["actions"]
    assert listing["totalSchedules"] == 7

    removed = await client.delete(f"{PREFIX}/sync/schedules/nightly_full")
    assert removed.status_code == 200
    assert (await client.delete(f"{PREFIX}/sync/schedules/nightly_full")).status_code == 404


@pytest.mark.asyncio
async def test_run_schedule_reports_outcome(client, context):
    async def explode():
        raise RuntimeError("ledger store unreachable")

    context.scheduler.add_schedule("broken", "0 1 * * *", explode)

    failed = await client.post(f"{PREFIX}/sync/schedules/broken/run")
    assert failed.status_code == 200
    body = failed.json()
    assert body["success"] is False
    assert body["message"] == "Schedule run failed"
    assert body["data"]["schedule"]["errorCount"] == 1

    succeeded = (await client.post(f"{PREFIX}/sync/schedules/sync_failure_reprocessor/run")).json()
    assert succeeded["success"] is True


@pytest.mark.asyncio
async def test_failures_and_retry_by_entity(client, context):
    await seed_basic(context)
    await context.failure_ledger.record_failure(EntityKind.PAYMENT, "pay-1", ConnectionError("down"))

    listing = (await client.get(f"{PREFIX}/sync/failures")).json()["data"]
    assert listing["pending"] == 1

    response = await client.post(f"{PREFIX}/sync/failures/retry", json={"kind": "payment", "entity_id": "pay-1"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "synced"
    assert await context.failure_ledger.count_pending() == 0

    response = await client.get(f"{PREFIX}/sync/failures", params={"status": "exploded"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_maintenance_job_endpoints(client):
    created = await client.post(f"{PREFIX}/maintenance/jobs", json={
        "operation": "sync_property_accounts",
        "company_id": "co-1",
    })
    assert created.status_code == 200
    job_id = created.json()["data"]["job"]["id"]

    again = await client.post(f"{PREFIX}/maintenance/jobs", json={
        "operation": "sync_property_accounts",
        "company_id": "co-1",
    })
    assert again.json()["data"]["deduplicated"] is True

    fetched = await client.get(f"{PREFIX}/maintenance/jobs/{job_id}", params={"company_id": "co-1"})
    assert fetched.json()["data"]["status"] == "pending"

    other = await client.get(f"{PREFIX}/maintenance/jobs/{job_id}", params={"company_id": "co-2"})
    assert other.status_code == 404

    listing = await client.get(f"{PREFIX}/maintenance/jobs", params={"company_id": "co-1"})
    assert [j["id"] for j in listing.json()["data"]["jobs"]] == [job_id]


@pytest.mark.asyncio
async def test_sync_health_quick_mode(client, context, monkeypatch):
    """Healthy on a clean store; degraded when the consistency check overruns."""
    await context.scheduler.start_all()
    response = await client.get(f"{PREFIX}/sync/health")
    data = response.json()["data"]
    assert data["status"] == "healthy"
    assert data["consistencyCheck"]["isConsistent"] is True

    release = asyncio.Event()
    original = context.checker.check

    async def slow_check(lookback_days=30, concurrency=8):
        await release.wait()
        return await original(lookback_days, concurrency)

    monkeypatch.setattr(context.checker, "check", slow_check)
    try:
        data = (await client.get(f"{PREFIX}/sync/health")).json()["data"]
        assert data["status"] == "degraded"
        assert data["consistencyCheck"] == "timeout"
    finally:
        release.set()
        await context.health._quick_check


@pytest.mark.asyncio
async def test_sync_health_unhealthy_without_detection_or_schedules(client, context):
    for schedule in context.scheduler.list_schedules():
        context.scheduler.disable_schedule(schedule.name)

    data = (await client.get(f"{PREFIX}/sync/health", params={"deep": True})).json()["data"]

    assert data["status"] == "unhealthy"
    assert data["mode"] == "deep"
    assert data["detection"]["running"] is False
    assert data["enabledSchedules"] == 0


@pytest.mark.asyncio
async def test_sync_health_unhealthy_after_schedules_stopped(client, context):
    """Enabled schedules with no running timers leave the pipeline dark."""
    await context.scheduler.start_all()
    data = (await client.get(f"{PREFIX}/sync/health", params={"deep": True})).json()["data"]
    assert data["status"] == "healthy"
    assert data["activeSchedules"] == 6

    stopped = await client.post(f"{PREFIX}/sync/schedules/stop-all")
    assert stopped.status_code == 200

    data = (await client.get(f"{PREFIX}/sync/health", params={"deep": True})).json()["data"]
    assert data["status"] == "unhealthy"
    assert data["enabledSchedules"] == 6
    assert data["activeSchedules"] == 0


@pytest.mark.asyncio
async def test_status_and_stats(client):
    status = (await client.get(f"{PREFIX}/sync/status")).json()["data"]
    assert status["isRunning"] is False
    assert status["fullSync"]["inProgress"] is False

    stats = (await client.get(f"{PREFIX}/sync/stats")).json()["data"]
    assert stats["pendingFailures"] == 0
    assert stats["circuitBreaker"]["state"] == "closed"
