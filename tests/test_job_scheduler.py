"""
Test the cron scheduler: registration, manual runs, error accounting and timers.
"""

import asyncio
from datetime import timedelta

import pytest

from ledgersync.core.events import EventBus
from ledgersync.core.exceptions import ScheduleNotFoundError, ValidationError
from ledgersync.scheduler import JobScheduler, job_scheduler

DEFAULT_SCHEDULES = {
    "hourly_sync",
    "daily_sync",
    "ledger_reconciliation",
    "sync_failure_reprocessor",
    "weekly_consistency_check",
    "monthly_deep_sync",
}


async def noop():
    return {"ok": True}


def test_invalid_cron_is_rejected():
    scheduler = JobScheduler()
    with pytest.raises(ValidationError):
        scheduler.add_schedule("broken", "every tuesday", noop)
    with pytest.raises(ValidationError):
        scheduler.add_schedule("", "* * * * *", noop)
    assert scheduler.list_schedules() == []


def test_duplicate_and_missing_schedules():
    scheduler = JobScheduler()
    scheduler.add_schedule("nightly", "0 1 * * *", noop)
    with pytest.raises(ValidationError):
        scheduler.add_schedule("nightly", "0 2 * * *", noop)
    with pytest.raises(ScheduleNotFoundError):
        scheduler.get_schedule("weekly")
    with pytest.raises(ScheduleNotFoundError):
        scheduler.remove_schedule("weekly")


def test_enable_and_disable():
    scheduler = JobScheduler()
    descriptor = scheduler.add_schedule("nightly", "0 1 * * *", noop)
    assert descriptor.next_run is not None
    assert scheduler.enabled_count() == 1

    scheduler.disable_schedule("nightly")
    assert descriptor.enabled is False
    assert descriptor.next_run is None
    assert scheduler.enabled_count() == 0

    scheduler.enable_schedule("nightly")
    assert descriptor.enabled is True
    assert descriptor.next_run is not None

    with pytest.raises(ValidationError):
        scheduler.update_schedule("nightly", cron_expression="61 * * * *")
    assert descriptor.cron_expression == "0 1 * * *"


@pytest.mark.asyncio
async def test_run_now_records_stats():
    bus = EventBus()
    scheduler = JobScheduler(bus)
    scheduler.add_schedule("nightly", "0 1 * * *", noop)

    first = await scheduler.run_now("nightly")
    second = await scheduler.run_now("nightly")

    assert first["success"] is True and second["success"] is True
    descriptor = scheduler.get_schedule("nightly")
    assert descriptor.run_count == 2
    assert descriptor.error_count == 0
    assert descriptor.last_run is not None
    assert descriptor.average_duration >= 0
    assert len(bus.recent(name="scheduled_sync_completed")) == 2


@pytest.mark.asyncio
async def test_failed_run_is_counted_and_emitted():
    bus = EventBus()
    scheduler = JobScheduler(bus)

    async def explode():
        raise RuntimeError("ledger store unreachable")

    scheduler.add_schedule("nightly", "0 1 * * *", explode)
    result = await scheduler.run_now("nightly")

    assert result["success"] is False
    descriptor = scheduler.get_schedule("nightly")
    assert descriptor.error_count == 1
    assert descriptor.run_count == 1
    assert descriptor.last_error == "ledger store unreachable"
    event = bus.recent(1, "scheduled_sync_error")[0]
    assert event.payload == {"schedule": "nightly", "error": "ledger store unreachable"}


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped():
    scheduler = JobScheduler()
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow():
        started.set()
        await release.wait()

    scheduler.add_schedule("slow", "0 1 * * *", slow)
    first = asyncio.ensure_future(scheduler.run_now("slow"))
    await started.wait()

    overlapping = await scheduler.run_now("slow")
    release.set()

    assert overlapping["success"] is False
    assert (await first)["success"] is True
    assert scheduler.get_schedule("slow").run_count == 1


@pytest.mark.asyncio
async def test_timer_fires_and_stop_waits_for_run(monkeypatch):
    """Stopping cancels timers but lets a run in progress complete."""
    monkeypatch.setattr(job_scheduler, "next_fire_time", lambda expression, now: now + timedelta(milliseconds=10))
    scheduler = JobScheduler()
    started = asyncio.Event()
    finished = []

    async def work():
        started.set()
        await asyncio.sleep(0.05)
        finished.append(True)

    scheduler.add_schedule("fast", "* * * * *", work)
    await scheduler.start_all()
    await asyncio.wait_for(started.wait(), timeout=2)
    await scheduler.stop_all()

    assert finished == [True]
    status = scheduler.get_status()
    assert status["isStarted"] is False
    assert status["activeTimers"] == 0
    assert status["runningJobs"] == 0


@pytest.mark.asyncio
async def test_default_schedules_are_registered(context):
    scheduler = context.scheduler
    assert {s.name for s in scheduler.list_schedules()} == DEFAULT_SCHEDULES
    assert set(scheduler.actions) == DEFAULT_SCHEDULES

    custom = scheduler.add_action_schedule("nightly_full", "30 1 * * *", "daily_sync", "Extra full sync")
    assert custom.description == "Extra full sync"
    with pytest.raises(ValidationError):
        scheduler.add_action_schedule("bogus", "30 1 * * *", "format_disk")

    result = await scheduler.run_now("sync_failure_reprocessor")
    assert result["success"] is True
    assert result["schedule"]["runCount"] == 1
