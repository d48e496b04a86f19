"""
Sync service: the event-handling boundary of the engine.

Responsibilities:
- start/stop change detection (push with poll fallback)
- dispatch change events to the ledger poster, isolating per-entity failures
- drain the ledger-event backlog on a fixed interval
- full sync as a background job with status reporting
- manual retry and reconcile operations for the API
- sync statistics
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

import structlog

from ledgersync.core.clock import utcnow
from ledgersync.core.events import EventBus
from ledgersync.core.exceptions import NotFoundError, PaymentNotFoundError
from ledgersync.detection.base import DetectionStrategy
from ledgersync.detection.factory import start_detector
from ledgersync.detection.poll_detector import PollDetector
from ledgersync.detection.push_detector import PushDetector
from ledgersync.detection.types import (
    ChangeEvent,
    Deleted,
    Inserted,
    PaymentSnapshot,
    PropertySnapshot,
    Snapshot,
    Updated,
    UserSnapshot,
)
from ledgersync.models.sync_failure import EntityKind
from .data_access import ResilientDataAccess
from .deduplicator import Deduplicator
from .failure_ledger import FailureLedger, ReprocessSummary
from .ledger_events import DrainSummary, LedgerEventQueue
from .ledger_poster import LedgerPoster
from .operational_reader import OperationalReader

logger = structlog.get_logger(__name__)

MAX_RECENT_ERRORS = 50

SNAPSHOT_TYPES = {
    EntityKind.PAYMENT: PaymentSnapshot,
    EntityKind.PROPERTY: PropertySnapshot,
    EntityKind.USER: UserSnapshot,
}


@dataclass
class SyncStats:
    """Running counters for all sync paths."""
    total_synced: int = 0
    success_count: int = 0
    error_count: int = 0
    last_sync_time: Optional[datetime] = None
    sync_duration: float = 0.0
    errors: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS))

    def record_success(self) -> None:
        self.total_synced += 1
        self.success_count += 1
        self.last_sync_time = utcnow()

    def record_error(self, kind: str, entity_id: str, error: BaseException) -> None:
        self.total_synced += 1
        self.error_count += 1
        self.errors.append({
            "kind": kind,
            "entityId": entity_id,
            "error": str(error)[:500],
            "timestamp": utcnow().isoformat(),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSynced": self.total_synced,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "syncDuration": round(self.sync_duration, 3),
            "errors": list(self.errors)[-10:],
        }


@dataclass
class FullSyncJob:
    job_id: Optional[str] = None
    in_progress: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inProgress": self.in_progress,
            "jobId": self.job_id,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "lastError": self.last_error,
            "result": self.result,
        }


class SyncService:
    """Coordinates detection, posting, failure recording and full syncs."""

    def __init__(
        self,
        reader: OperationalReader,
        poster: LedgerPoster,
        failure_ledger: FailureLedger,
        ledger_events: LedgerEventQueue,
        deduplicator: Deduplicator,
        push_detector: PushDetector,
        poll_detector: PollDetector,
        data_access: ResilientDataAccess,
        event_bus: EventBus,
        ledger_event_interval: float = 15.0,
        ledger_event_batch_size: int = 50,
        failure_batch_size: int = 100,
        full_sync_batch_size: int = 200,
    ):
        self.reader = reader
        self.poster = poster
        self.failure_ledger = failure_ledger
        self.ledger_events = ledger_events
        self.deduplicator = deduplicator
        self.push_detector = push_detector
        self.poll_detector = poll_detector
        self.data_access = data_access
        self.event_bus = event_bus

        self.ledger_event_interval = ledger_event_interval
        self.ledger_event_batch_size = ledger_event_batch_size
        self.failure_batch_size = failure_batch_size
        self.full_sync_batch_size = full_sync_batch_size

        self.detector: Optional[DetectionStrategy] = None
        self.stats = SyncStats()
        self.full_sync_job = FullSyncJob()
        self._full_sync_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="sync_service")

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self.detector is not None and self.detector.is_running

    @property
    def mode(self) -> Optional[str]:
        return self.detector.mode if self.detector else None

    async def start_realtime_sync(self) -> str:
        """Start detection and the ledger-event drain. Returns the detection mode."""
        if self.is_running:
            return self.detector.mode

        self.detector = await start_detector(
            self.push_detector, self.poll_detector, self.handle_event, self.data_access
        )
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop(), name="ledger-event-drain")

        self.logger.info("Real-time sync started", mode=self.detector.mode)
        return self.detector.mode

    async def stop_realtime_sync(self) -> None:
        if self.detector is not None:
            await self.detector.stop()
            self.detector = None

        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        self.logger.info("Real-time sync stopped")

    async def shutdown(self) -> None:
        await self.stop_realtime_sync()
        if self._full_sync_task is not None and not self._full_sync_task.done():
            # Let an in-flight full sync finish its current write
            self._full_sync_task.cancel()
            try:
                await self._full_sync_task
            except asyncio.CancelledError:
                pass

    async def _drain_loop(self) -> None:
        while True:
            try:
                await self.drain_ledger_events()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Ledger event drain failed", error=str(e))
            await asyncio.sleep(self.ledger_event_interval)

    async def drain_ledger_events(self) -> DrainSummary:
        return await self.ledger_events.process_pending(
            self.poster.post_owner_income, limit=self.ledger_event_batch_size
        )

    # Event handling

    async def handle_event(self, event: ChangeEvent) -> None:
        """Apply one change event. Failures are recorded, never raised."""
        kind = event.kind
        try:
            if isinstance(event, Deleted):
                await self.poster.remove_entity(kind, event.entity_id)
            elif isinstance(event, (Inserted, Updated)):
                await self._sync_snapshot(kind, event.snapshot)
            else:
                raise TypeError(f"Unknown change event: {event!r}")

            await self.failure_ledger.resolve(kind, event.entity_id)
        except Exception as e:
            await self._record_failure(kind, event.entity_id, e)
            return

        self.stats.record_success()
        self.event_bus.emit(f"{kind.value}_synced", entity_id=event.entity_id, action=type(event).__name__.lower())

    async def _record_failure(self, kind: EntityKind, entity_id: str, error: BaseException) -> None:
        self.stats.record_error(kind.value, entity_id, error)
        self.logger.error("Sync failed", kind=kind.value, entity_id=entity_id, error=str(error))
        try:
            await self.failure_ledger.record_failure(kind, entity_id, error)
        except Exception as record_error:
            self.logger.error(
                "Could not record sync failure",
                kind=kind.value,
                entity_id=entity_id,
                error=str(record_error)
            )
        self.event_bus.emit("sync_error", kind=kind.value, entity_id=entity_id, error=str(error))

    async def _sync_snapshot(self, kind: EntityKind, snapshot: Snapshot) -> None:
        expected = SNAPSHOT_TYPES.get(kind)
        if expected is None:
            raise ValueError(f"Unknown entity kind: {kind}")
        if not isinstance(snapshot, expected):
            raise TypeError(f"Expected {expected.__name__} for {kind.value}, got {type(snapshot).__name__}")

        if isinstance(snapshot, PaymentSnapshot):
            await self.poster.sync_payment(snapshot)
        elif isinstance(snapshot, PropertySnapshot):
            await self.poster.sync_property_metadata(snapshot)
        else:
            await self.poster.sync_user_metadata(snapshot)

    async def _load_snapshot(self, kind: EntityKind, entity_id: str) -> Optional[Snapshot]:
        if kind is EntityKind.PAYMENT:
            return await self.reader.get_payment(entity_id)
        if kind is EntityKind.PROPERTY:
            return await self.reader.get_property(entity_id)
        if kind is EntityKind.USER:
            return await self.reader.get_user(entity_id)
        raise ValueError(f"Unknown entity kind: {kind}")

    # Manual and scheduled retries

    async def retry_sync_for(self, kind: EntityKind, entity_id: str) -> None:
        """Re-run the detection-time sync for one entity. Errors propagate."""
        kind = EntityKind(kind)
        snapshot = await self._load_snapshot(kind, entity_id)
        if snapshot is None:
            await self.poster.remove_entity(kind, entity_id)
        else:
            await self._sync_snapshot(kind, snapshot)

    async def retry_failure(self, failure_id: int) -> Dict[str, Any]:
        """Retry one recorded failure now, regardless of its schedule."""
        failure = await self.failure_ledger.get_failure(failure_id)
        if failure is None:
            raise NotFoundError(f"Sync failure not found: {failure_id}", {"failure_id": failure_id})

        try:
            await self.retry_sync_for(EntityKind(failure.entity_kind), failure.entity_id)
        except Exception as e:
            await self.failure_ledger.mark_retry_failed(failure, e)
            raise
        await self.failure_ledger.mark_resolved(failure.id)
        return {"id": failure.id, "kind": failure.entity_kind, "entityId": failure.entity_id, "status": "resolved"}

    async def retry_entity(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        await self.retry_sync_for(kind, entity_id)
        await self.failure_ledger.resolve(kind, entity_id)
        return {"kind": EntityKind(kind).value, "entityId": entity_id, "status": "synced"}

    async def reprocess_failures(self) -> ReprocessSummary:
        return await self.failure_ledger.reprocess_due(self.retry_sync_for, limit=self.failure_batch_size)

    async def reconcile_payment_posting(self, payment_id: str) -> Dict[str, Any]:
        """Post and verify one payment on demand. Errors propagate."""
        payment = await self.reader.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)

        commission = await self.poster.post_payment_commission(payment)
        owner_income = await self.poster.post_owner_income(payment_id)
        verification = await self.poster.verify_payment_postings(payment_id, raise_errors=True)
        await self.failure_ledger.resolve(EntityKind.PAYMENT, payment_id)

        return {
            "paymentId": payment_id,
            "postable": payment.is_postable,
            "commissionAppended": bool(commission and commission.appended),
            "ownerIncomeAppended": bool(owner_income and owner_income.appended),
            "verification": verification.to_dict(),
        }

    # Bulk syncs

    async def perform_full_sync(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Sync properties, then payments, then users. Per-entity failures are recorded."""
        started = time.monotonic()
        counts = {"properties": 0, "payments": 0, "users": 0, "errors": 0}
        self.logger.info("Full sync started", since=since.isoformat() if since else None)

        async def run(kind: EntityKind, entity_id: str, operation) -> None:
            try:
                await operation()
                await self.failure_ledger.resolve(kind, entity_id)
                self.stats.record_success()
            except Exception as e:
                counts["errors"] += 1
                await self._record_failure(kind, entity_id, e)

        for prop in await self.reader.list_properties():
            if since is None or prop.updated_at >= since:
                await run(EntityKind.PROPERTY, prop.id, lambda p=prop: self.poster.sync_property_metadata(p))
                counts["properties"] += 1

        async for batch in self.reader.iter_postable_payments(since=since, batch_size=self.full_sync_batch_size):
            for payment in batch:
                await run(EntityKind.PAYMENT, payment.id, lambda p=payment: self.poster.sync_payment(p))
                counts["payments"] += 1

        for user in await self.reader.list_users():
            if since is None or user.updated_at >= since:
                await run(EntityKind.USER, user.id, lambda u=user: self.poster.sync_user_metadata(u))
                counts["users"] += 1

        duration = time.monotonic() - started
        self.stats.sync_duration = duration
        self.stats.last_sync_time = utcnow()
        result = {**counts, "durationSeconds": round(duration, 3)}
        self.logger.info("Full sync completed", **result)
        self.event_bus.emit("full_sync_completed", **result)
        return result

    async def start_full_sync_async(self) -> Dict[str, Any]:
        """Kick off a background full sync, or report the one already running."""
        if self.full_sync_job.in_progress:
            return {
                "jobId": self.full_sync_job.job_id,
                "startedAt": self.full_sync_job.started_at.isoformat(),
                "alreadyRunning": True,
            }

        self.full_sync_job = FullSyncJob(job_id=str(uuid.uuid4()), in_progress=True, started_at=utcnow())
        self._full_sync_task = asyncio.create_task(self._run_full_sync_job(), name="full-sync")
        return {
            "jobId": self.full_sync_job.job_id,
            "startedAt": self.full_sync_job.started_at.isoformat(),
            "alreadyRunning": False,
        }

    async def _run_full_sync_job(self) -> None:
        job = self.full_sync_job
        try:
            job.result = await self.perform_full_sync()
        except Exception as e:
            job.last_error = str(e)
            self.logger.error("Background full sync failed", job_id=job.job_id, error=str(e))
        finally:
            job.in_progress = False
            job.completed_at = utcnow()

    def get_full_sync_job_status(self) -> Dict[str, Any]:
        return self.full_sync_job.to_dict()

    async def sync_recent_changes(self, window: timedelta = timedelta(hours=1)) -> Dict[str, Any]:
        return await self.perform_full_sync(since=utcnow() - window)

    async def reconcile_recent_payments(self, window: timedelta = timedelta(minutes=30)) -> Dict[str, Any]:
        """Re-post payments updated within ``window`` and dedupe recently touched ledgers."""
        since = utcnow() - window
        reposted = 0
        async for batch in self.reader.iter_postable_payments(since=since, batch_size=self.full_sync_batch_size):
            for payment in batch:
                try:
                    await self.poster.sync_payment(payment)
                    reposted += 1
                except Exception as e:
                    await self._record_failure(EntityKind.PAYMENT, payment.id, e)

        dedup_results = await self.deduplicator.deduplicate_all(updated_since=since)
        result = {
            "paymentsChecked": reposted,
            "ledgersDeduplicated": len([r for r in dedup_results if r.archived_count]),
            "duplicatesArchived": sum(r.archived_count for r in dedup_results),
        }
        self.logger.info("Ledger reconciliation pass finished", **result)
        return result

    async def housekeeping(self, failure_retention: timedelta = timedelta(days=30),
                           event_retention: timedelta = timedelta(days=30)) -> Dict[str, int]:
        now = utcnow()
        purged_failures = await self.failure_ledger.purge(now - failure_retention)
        purged_events = await self.ledger_events.cleanup(now - event_retention)
        return {"purgedFailures": purged_failures, "purgedLedgerEvents": purged_events}

    # Reporting

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "mode": self.mode,
            "lastSyncTime": self.stats.last_sync_time.isoformat() if self.stats.last_sync_time else None,
            "fullSync": self.full_sync_job.to_dict(),
        }

    async def get_sync_stats(self) -> Dict[str, Any]:
        return {
            **self.stats.to_dict(),
            "isRunning": self.is_running,
            "mode": self.mode,
            "detector": self.detector.get_status() if self.detector else None,
            "circuitBreaker": self.data_access.circuit_breaker.get_state().to_dict(),
            "pendingFailures": await self.failure_ledger.count_pending(),
            "openLedgerEvents": await self.ledger_events.count_open(),
            "recentEvents": [e.to_dict() for e in self.event_bus.recent(10)],
        }
