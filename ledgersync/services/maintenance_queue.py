"""
Durable maintenance job queue with lease-based claims.

Jobs are rows in ``maintenance_jobs``. Any number of worker processes may poll
the table; a job is claimed with a conditional UPDATE, so exactly one worker
wins. A worker that dies mid-job leaves an expired lease behind, which the
next tick puts back to pending.
"""

import asyncio
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from ledgersync.core.clock import utcnow
from ledgersync.core.database import Database
from ledgersync.core.exceptions import JobNotFoundError, ValidationError
from ledgersync.models.maintenance_job import JobStatus, MaintenanceJob
from .data_access import ResilientDataAccess
from .ledger_poster import LedgerPoster
from .operational_reader import OperationalReader

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
LEASE_RECOVERY_DELAY = timedelta(seconds=5)
MAX_RETRY_DELAY_SECONDS = 300
RETRY_DELAY_STEP_SECONDS = 5
CLAIM_CANDIDATES = 5

JobHandler = Callable[[str], Awaitable[Dict[str, Any]]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class EnqueueResult:
    job: MaintenanceJob
    deduplicated: bool

    def to_dict(self) -> dict:
        return {"job": self.job.to_dict(), "deduplicated": self.deduplicated}


def build_operations(reader: OperationalReader, poster: LedgerPoster, batch_size: int = 200) -> Dict[str, JobHandler]:
    """The built-in maintenance operations, keyed by name."""

    async def sync_property_accounts(company_id: str) -> Dict[str, Any]:
        properties = 0
        for prop in await reader.list_properties(company_id=company_id):
            await poster.sync_property_metadata(prop)
            properties += 1

        payments = 0
        async for batch in reader.iter_postable_payments(company_id=company_id, batch_size=batch_size):
            for payment in batch:
                await poster.sync_payment(payment)
                payments += 1
        return {"propertiesSynced": properties, "paymentsPosted": payments}

    async def ensure_development_ledgers(company_id: str) -> Dict[str, Any]:
        ledgers = 0
        for development in await reader.list_developments(company_id=company_id):
            await poster.ensure_development_ledger(development.id)
            ledgers += 1

        payments = 0
        async for batch in reader.iter_postable_payments(
            company_id=company_id, development_only=True, batch_size=batch_size
        ):
            for payment in batch:
                await poster.sync_payment(payment)
                payments += 1
        return {"developmentLedgers": ledgers, "paymentsBackfilled": payments}

    return {
        "sync_property_accounts": sync_property_accounts,
        "ensure_development_ledgers": ensure_development_ledgers,
    }


class MaintenanceQueue:
    """Enqueue, claim and execute maintenance jobs."""

    def __init__(
        self,
        database: Database,
        data_access: ResilientDataAccess,
        operations: Dict[str, JobHandler],
        poll_interval: float = 5.0,
        lease_seconds: int = 120,
        max_attempts: int = 3,
        worker_id: Optional[str] = None,
    ):
        self.database = database
        self.data_access = data_access
        self.operations = operations
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.worker_id = worker_id or default_worker_id()

        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="maintenance_queue", worker_id=self.worker_id)

    # Producer side

    async def enqueue(
        self,
        operation: str,
        company_id: str,
        requested_by: Optional[str] = None,
        run_after: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Queue ``operation`` for ``company_id`` unless an active job already exists."""
        if operation not in self.operations:
            raise ValidationError(
                f"Unknown maintenance operation: {operation}",
                {"operation": operation, "known": sorted(self.operations)}
            )
        if not company_id:
            raise ValidationError("company_id is required")

        existing = await self._active_job(operation, company_id)
        if existing is not None:
            return EnqueueResult(existing, deduplicated=True)

        now = utcnow()
        job = MaintenanceJob(
            operation=operation,
            company_id=company_id,
            requested_by=requested_by,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            run_after=run_after or now,
        )
        try:
            async with self.database.session() as session:
                session.add(job)
        except IntegrityError:
            # Lost the race against another enqueue for the same key
            existing = await self._active_job(operation, company_id)
            if existing is None:
                raise
            return EnqueueResult(existing, deduplicated=True)

        self.logger.info("Maintenance job queued", job_id=job.id, operation=operation, company_id=company_id)
        return EnqueueResult(job, deduplicated=False)

    async def _active_job(self, operation: str, company_id: str) -> Optional[MaintenanceJob]:
        async with self.database.session() as session:
            result = await session.execute(
                select(MaintenanceJob).where(
                    MaintenanceJob.operation == operation,
                    MaintenanceJob.company_id == company_id,
                    MaintenanceJob.status.in_(ACTIVE_STATUSES),
                )
            )
            return result.scalars().first()

    async def get_job(self, job_id: str, company_id: Optional[str] = None) -> MaintenanceJob:
        async with self.database.session() as session:
            job = await session.get(MaintenanceJob, job_id)
        if job is None or (company_id is not None and job.company_id != company_id):
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, company_id: str, operation: Optional[str] = None, limit: int = 20) -> List[MaintenanceJob]:
        limit = max(1, min(int(limit), 100))
        query = (
            select(MaintenanceJob)
            .where(MaintenanceJob.company_id == company_id)
            .order_by(MaintenanceJob.created_at.desc())
            .limit(limit)
        )
        if operation:
            query = query.where(MaintenanceJob.operation == operation)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # Worker side

    async def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._task = asyncio.create_task(self._worker_loop(), name="maintenance-queue")
        self.logger.info("Maintenance queue worker started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self.is_running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.logger.info("Maintenance queue worker stopped")

    async def _worker_loop(self) -> None:
        while self.is_running:
            try:
                job = await self.tick()
                if job is not None:
                    # More work may be waiting
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Maintenance queue tick failed", error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> Optional[MaintenanceJob]:
        """Recover expired leases, then claim and run at most one job."""
        await self.requeue_expired_leases()
        job = await self.claim_next_job()
        if job is None:
            return None
        return await self.execute_job(job)

    async def requeue_expired_leases(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()

        async def requeue() -> int:
            async with self.database.session() as session:
                result = await session.execute(
                    update(MaintenanceJob)
                    .where(
                        MaintenanceJob.status == JobStatus.RUNNING.value,
                        MaintenanceJob.lease_expires_at < now,
                    )
                    .values(
                        status=JobStatus.PENDING.value,
                        run_after=now + LEASE_RECOVERY_DELAY,
                        worker_id=None,
                        lease_expires_at=None,
                        updated_at=now,
                    )
                )
                return result.rowcount

        count = await self.data_access.execute_with_retry(requeue, description="requeue_expired_leases")
        if count:
            self.logger.warning("Expired maintenance leases requeued", count=count)
        return count

    async def claim_next_job(self, now: Optional[datetime] = None) -> Optional[MaintenanceJob]:
        """Claim the oldest eligible pending job. Returns None if nothing was claimed."""
        now = now or utcnow()

        async with self.database.session() as session:
            result = await session.execute(
                select(MaintenanceJob.id)
                .where(
                    MaintenanceJob.status == JobStatus.PENDING.value,
                    MaintenanceJob.run_after <= now,
                )
                .order_by(MaintenanceJob.run_after, MaintenanceJob.created_at)
                .limit(CLAIM_CANDIDATES)
            )
            candidates = [row[0] for row in result.all()]

        for job_id in candidates:
            if await self._claim(job_id, now):
                job = await self.get_job(job_id)
                self.logger.info(
                    "Maintenance job claimed",
                    job_id=job.id,
                    operation=job.operation,
                    attempt=job.attempts
                )
                return job
        return None

    async def _claim(self, job_id: str, now: datetime) -> bool:
        async def claim() -> bool:
            async with self.database.session() as session:
                result = await session.execute(
                    update(MaintenanceJob)
                    .where(
                        MaintenanceJob.id == job_id,
                        MaintenanceJob.status == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        worker_id=self.worker_id,
                        lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                        attempts=MaintenanceJob.attempts + 1,
                        started_at=now,
                        updated_at=now,
                    )
                )
                return result.rowcount == 1

        return await self.data_access.execute_with_retry(claim, description="claim_maintenance_job")

    async def execute_job(self, job: MaintenanceJob) -> MaintenanceJob:
        """Run a claimed job and record its outcome."""
        handler = self.operations.get(job.operation)
        try:
            if handler is None:
                raise ValidationError(f"Unknown maintenance operation: {job.operation}")
            result = await handler(job.company_id)
        except Exception as e:
            return await self._record_failure(job, e)

        now = utcnow()
        await self._finish(job.id, {
            "status": JobStatus.COMPLETED.value,
            "result": result,
            "last_error": None,
            "finished_at": now,
            "lease_expires_at": None,
            "updated_at": now,
        })
        self.logger.info("Maintenance job completed", job_id=job.id, operation=job.operation, result=result)
        return await self.get_job(job.id)

    async def _record_failure(self, job: MaintenanceJob, error: BaseException) -> MaintenanceJob:
        now = utcnow()
        message = str(error)[:2000]
        if job.attempts < job.max_attempts:
            delay = min(MAX_RETRY_DELAY_SECONDS, RETRY_DELAY_STEP_SECONDS * job.attempts)
            values = {
                "status": JobStatus.PENDING.value,
                "run_after": now + timedelta(seconds=delay),
                "worker_id": None,
                "lease_expires_at": None,
                "last_error": message,
                "updated_at": now,
            }
            self.logger.warning(
                "Maintenance job failed, will retry",
                job_id=job.id,
                attempt=job.attempts,
                retry_in=delay,
                error=message
            )
        else:
            values = {
                "status": JobStatus.FAILED.value,
                "lease_expires_at": None,
                "finished_at": now,
                "last_error": message,
                "updated_at": now,
            }
            self.logger.error("Maintenance job failed permanently", job_id=job.id, attempts=job.attempts, error=message)

        await self._finish(job.id, values)
        return await self.get_job(job.id)

    async def _finish(self, job_id: str, values: Dict[str, Any]) -> bool:
        """Write an outcome, only if this worker still holds the lease."""
        async def write() -> bool:
            async with self.database.session() as session:
                result = await session.execute(
                    update(MaintenanceJob)
                    .where(
                        MaintenanceJob.id == job_id,
                        MaintenanceJob.status == JobStatus.RUNNING.value,
                        MaintenanceJob.worker_id == self.worker_id,
                    )
                    .values(**values)
                )
                return result.rowcount == 1

        written = await self.data_access.execute_with_retry(write, description="finish_maintenance_job")
        if not written:
            self.logger.warning("Lease lost before job outcome was written", job_id=job_id)
        return written

    async def purge(self, older_than: datetime) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                delete(MaintenanceJob).where(
                    MaintenanceJob.status.in_((JobStatus.COMPLETED.value, JobStatus.FAILED.value)),
                    MaintenanceJob.finished_at < older_than,
                )
            )
            return result.rowcount

    def get_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "workerId": self.worker_id,
            "pollInterval": self.poll_interval,
            "leaseSeconds": self.lease_seconds,
            "operations": sorted(self.operations),
        }
