"""
Sync health reporting.

Quick mode bounds the consistency check by a timeout. The check itself runs
in a shielded task and is never cancelled; a later quick call reuses it while
it is still running.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from ledgersync.core.clock import utcnow
from ledgersync.scheduler.job_scheduler import JobScheduler
from .consistency_checker import ConsistencyChecker, ConsistencyReport
from .failure_ledger import FailureLedger
from .sync_service import SyncService

logger = structlog.get_logger(__name__)


class HealthStatus:
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthService:
    """Combines detection, scheduler, failure and consistency state."""

    def __init__(
        self,
        sync_service: SyncService,
        checker: ConsistencyChecker,
        failure_ledger: FailureLedger,
        scheduler: JobScheduler,
        quick_timeout: float = 5.0,
        quick_lookback_days: int = 1,
        deep_lookback_days: int = 30,
        concurrency: int = 8,
        failure_threshold: int = 10,
    ):
        self.sync_service = sync_service
        self.checker = checker
        self.failure_ledger = failure_ledger
        self.scheduler = scheduler
        self.quick_timeout = quick_timeout
        self.quick_lookback_days = quick_lookback_days
        self.deep_lookback_days = deep_lookback_days
        self.concurrency = concurrency
        self.failure_threshold = failure_threshold
        self._quick_check: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="health")

    async def _quick_report(self) -> Optional[ConsistencyReport]:
        """Consistency report, or None if the check did not finish in time."""
        if self._quick_check is None or self._quick_check.done():
            self._quick_check = asyncio.create_task(
                self.checker.check(self.quick_lookback_days, self.concurrency),
                name="health-consistency-check"
            )
        try:
            return await asyncio.wait_for(asyncio.shield(self._quick_check), timeout=self.quick_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Consistency check timed out in quick health mode", timeout=self.quick_timeout)
            return None

    async def check_health(self, deep: bool = False) -> Dict[str, Any]:
        timed_out = False
        errors = []

        try:
            if deep:
                report = await self.checker.check(self.deep_lookback_days, self.concurrency)
            else:
                report = await self._quick_report()
                timed_out = report is None
        except Exception as e:
            self.logger.error("Consistency check failed during health check", error=str(e))
            report = None
            errors.append(f"consistency: {e}")

        try:
            pending_failures = await self.failure_ledger.count_pending()
        except Exception as e:
            self.logger.error("Could not count pending failures", error=str(e))
            pending_failures = None
            errors.append(f"failures: {e}")

        detection_running = self.sync_service.is_running
        enabled_schedules = self.scheduler.enabled_count()
        active_schedules = self.scheduler.active_count()

        if not detection_running and active_schedules == 0:
            status = HealthStatus.UNHEALTHY
        elif (
            timed_out
            or errors
            or (report is not None and not report.is_consistent)
            or (pending_failures is not None and pending_failures > self.failure_threshold)
        ):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        if timed_out:
            consistency: Any = "timeout"
        elif report is not None:
            consistency = report.to_dict()
        else:
            consistency = "error"

        return {
            "status": status,
            "mode": "deep" if deep else "quick",
            "checkedAt": utcnow().isoformat(),
            "detection": {"running": detection_running, "mode": self.sync_service.mode},
            "enabledSchedules": enabled_schedules,
            "activeSchedules": active_schedules,
            "pendingFailures": pending_failures,
            "consistencyCheck": consistency,
            "circuitBreaker": self.sync_service.data_access.circuit_breaker.get_state().to_dict(),
            "errors": errors,
        }
