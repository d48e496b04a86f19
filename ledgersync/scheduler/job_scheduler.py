"""
Cron scheduler for recurring sync work.

Each enabled schedule owns one asyncio task that computes its next fire time
with croniter, sleeps until then and runs the handler. Runs are tracked
separately from the timer tasks so that disabling a schedule never interrupts
a run already in progress.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog
from croniter import croniter

from ledgersync.core.clock import utcnow
from ledgersync.core.events import EventBus
from ledgersync.core.exceptions import ScheduleNotFoundError, ValidationError

logger = structlog.get_logger(__name__)

ScheduleHandler = Callable[[], Awaitable[Any]]


@dataclass
class ScheduleDescriptor:
    """State of one named recurring job."""
    name: str
    cron_expression: str
    description: str = ""
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    average_duration: float = 0.0
    error_count: int = 0
    last_error: Optional[str] = None

    def record_run(self, started: datetime, duration: float) -> None:
        self.last_run = started
        self.run_count += 1
        n = self.run_count
        self.average_duration = (self.average_duration * (n - 1) + duration) / n

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cronExpression": self.cron_expression,
            "description": self.description,
            "enabled": self.enabled,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "runCount": self.run_count,
            "averageDuration": round(self.average_duration, 3),
            "errorCount": self.error_count,
            "lastError": self.last_error,
        }


def validate_cron(expression: str) -> str:
    if not isinstance(expression, str) or not croniter.is_valid(expression):
        raise ValidationError(f"Invalid cron expression: {expression!r}", {"cron_expression": expression})
    return expression


def next_fire_time(expression: str, now: datetime) -> datetime:
    return croniter(expression, now).get_next(datetime)


class JobScheduler:
    """Owns schedule descriptors, their handlers and their timer tasks."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or EventBus()
        self.schedules: Dict[str, ScheduleDescriptor] = {}
        self.handlers: Dict[str, ScheduleHandler] = {}
        self.actions: Dict[str, ScheduleHandler] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self.is_started = False
        self.logger = logger.bind(service="job_scheduler")

    # Registration

    def add_schedule(
        self,
        name: str,
        cron_expression: str,
        handler: ScheduleHandler,
        description: str = "",
        enabled: bool = True,
    ) -> ScheduleDescriptor:
        if not name:
            raise ValidationError("Schedule name is required")
        if name in self.schedules:
            raise ValidationError(f"Schedule already exists: {name}", {"name": name})
        validate_cron(cron_expression)

        descriptor = ScheduleDescriptor(
            name=name,
            cron_expression=cron_expression,
            description=description,
            enabled=enabled,
            next_run=next_fire_time(cron_expression, utcnow()) if enabled else None,
        )
        self.schedules[name] = descriptor
        self.handlers[name] = handler
        self.logger.info("Registered schedule", name=name, cron=cron_expression, enabled=enabled)

        if self.is_started and enabled:
            self._start_timer(name)
        return descriptor

    def add_action_schedule(
        self,
        name: str,
        cron_expression: str,
        action: str,
        description: str = "",
        enabled: bool = True,
    ) -> ScheduleDescriptor:
        """Add a schedule that runs one of the registered built-in actions."""
        handler = self.actions.get(action)
        if handler is None:
            raise ValidationError(f"Unknown schedule action: {action}", {"known": sorted(self.actions)})
        return self.add_schedule(name, cron_expression, handler, description, enabled)

    def update_schedule(
        self,
        name: str,
        cron_expression: Optional[str] = None,
        description: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> ScheduleDescriptor:
        descriptor = self.get_schedule(name)
        if cron_expression is not None:
            descriptor.cron_expression = validate_cron(cron_expression)
        if description is not None:
            descriptor.description = description
        if enabled is not None:
            descriptor.enabled = enabled

        self._cancel_timer(name)
        if descriptor.enabled:
            descriptor.next_run = next_fire_time(descriptor.cron_expression, utcnow())
            if self.is_started:
                self._start_timer(name)
        else:
            descriptor.next_run = None

        self.logger.info("Updated schedule", name=name, cron=descriptor.cron_expression, enabled=descriptor.enabled)
        return descriptor

    def remove_schedule(self, name: str) -> None:
        self.get_schedule(name)
        self._cancel_timer(name)
        del self.schedules[name]
        del self.handlers[name]
        self.logger.info("Removed schedule", name=name)

    def enable_schedule(self, name: str) -> ScheduleDescriptor:
        return self.update_schedule(name, enabled=True)

    def disable_schedule(self, name: str) -> ScheduleDescriptor:
        return self.update_schedule(name, enabled=False)

    def get_schedule(self, name: str) -> ScheduleDescriptor:
        descriptor = self.schedules.get(name)
        if descriptor is None:
            raise ScheduleNotFoundError(name)
        return descriptor

    def list_schedules(self) -> List[ScheduleDescriptor]:
        return list(self.schedules.values())

    def enabled_count(self) -> int:
        return sum(1 for s in self.schedules.values() if s.enabled)

    def active_count(self) -> int:
        """Enabled schedules whose timer is actually running."""
        if not self.is_started:
            return 0
        return sum(1 for timer in self._timers.values() if not timer.done())

    # Lifecycle

    async def start_all(self) -> None:
        self.is_started = True
        for name, descriptor in self.schedules.items():
            if descriptor.enabled and name not in self._timers:
                self._start_timer(name)
        self.logger.info("Scheduler started", active=len(self._timers))

    async def stop_all(self) -> None:
        """Cancel every timer, then wait for in-flight runs to finish."""
        self.is_started = False
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            try:
                await timer
            except asyncio.CancelledError:
                pass

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self.logger.info("Scheduler stopped")

    def _start_timer(self, name: str) -> None:
        self._timers[name] = asyncio.create_task(self._timer_loop(name), name=f"schedule-{name}")

    def _cancel_timer(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    async def _timer_loop(self, name: str) -> None:
        while True:
            descriptor = self.schedules.get(name)
            if descriptor is None or not descriptor.enabled:
                return
            now = utcnow()
            descriptor.next_run = next_fire_time(descriptor.cron_expression, now)
            await asyncio.sleep(max(0.0, (descriptor.next_run - now).total_seconds()))
            # Shielded so cancelling the timer leaves the run intact
            await asyncio.shield(self._spawn_run(name))

    def _spawn_run(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._execute(name), name=f"schedule-run-{name}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    # Execution

    async def run_now(self, name: str) -> Dict[str, Any]:
        """Run a schedule immediately, outside its cron timing."""
        self.get_schedule(name)
        task = self._spawn_run(name)
        success = await task
        return {"schedule": self.schedules[name].to_dict() if name in self.schedules else None, "success": success}

    async def _execute(self, name: str) -> bool:
        descriptor = self.schedules.get(name)
        handler = self.handlers.get(name)
        if descriptor is None or handler is None:
            return False

        running = self._runs.get(name)
        if running is not None and not running.done():
            self.logger.warning("Schedule still running, skipping overlapping run", name=name)
            return False
        self._runs[name] = asyncio.current_task()

        started_at = utcnow()
        started = time.monotonic()
        self.logger.info("Scheduled job started", name=name)
        try:
            result = await handler()
        except Exception as e:
            descriptor.record_run(started_at, time.monotonic() - started)
            descriptor.error_count += 1
            descriptor.last_error = str(e)[:1000]
            self.logger.error("Scheduled job failed", name=name, error=str(e), error_count=descriptor.error_count)
            self.event_bus.emit("scheduled_sync_error", schedule=name, error=str(e))
            return False
        finally:
            self._runs.pop(name, None)

        duration = time.monotonic() - started
        descriptor.record_run(started_at, duration)
        self.logger.info("Scheduled job completed", name=name, duration=round(duration, 3), result=_summarize(result))
        self.event_bus.emit("scheduled_sync_completed", schedule=name, duration=duration)
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "isStarted": self.is_started,
            "totalSchedules": len(self.schedules),
            "enabledSchedules": self.enabled_count(),
            "activeTimers": self.active_count(),
            "runningJobs": len(self._in_flight),
            "schedules": [s.to_dict() for s in self.schedules.values()],
        }

    # Built-in schedules

    def register_defaults(
        self,
        sync_service,
        checker,
        maintenance_queue=None,
        consistency_lookback_days: int = 30,
        consistency_concurrency: int = 8,
        retention: timedelta = timedelta(days=30),
    ) -> None:
        """Register the standard recurring jobs."""
        from ledgersync.services.consistency_checker import AUTO_FIX_SAFE_TYPES

        async def hourly_sync():
            return await sync_service.sync_recent_changes(timedelta(hours=1))

        async def daily_sync():
            result = await sync_service.perform_full_sync()
            result["purgedFailures"] = await sync_service.failure_ledger.purge(utcnow() - retention)
            return result

        async def ledger_reconciliation():
            return await sync_service.reconcile_recent_payments(timedelta(minutes=30))

        async def sync_failure_reprocessor():
            return await sync_service.reprocess_failures()

        async def weekly_consistency_check():
            report = await checker.check(consistency_lookback_days, consistency_concurrency)
            if report.is_consistent:
                return report.to_dict()
            repair = await checker.repair(report, AUTO_FIX_SAFE_TYPES)
            return {"report": report.to_dict(), "repair": repair.to_dict()}

        async def monthly_deep_sync():
            result = await sync_service.perform_full_sync()
            result.update(await sync_service.housekeeping(retention, retention))
            if maintenance_queue is not None:
                result["purgedMaintenanceJobs"] = await maintenance_queue.purge(utcnow() - retention)
            return result

        defaults = [
            ("hourly_sync", "0 * * * *", hourly_sync, "Sync entities updated in the last hour"),
            ("daily_sync", "0 2 * * *", daily_sync, "Full sync and purge of old resolved failures"),
            ("ledger_reconciliation", "*/5 * * * *", ledger_reconciliation,
             "Re-post recent payments and deduplicate recent ledgers"),
            ("sync_failure_reprocessor", "*/5 * * * *", sync_failure_reprocessor, "Retry due sync failures"),
            ("weekly_consistency_check", "0 3 * * 0", weekly_consistency_check,
             "Consistency check with safe auto-fixes"),
            ("monthly_deep_sync", "0 4 1 * *", monthly_deep_sync, "Full sync and housekeeping"),
        ]
        for name, cron, handler, description in defaults:
            self.actions[name] = handler
            if name not in self.schedules:
                self.add_schedule(name, cron, handler, description)


def _summarize(result: Any) -> Any:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result
