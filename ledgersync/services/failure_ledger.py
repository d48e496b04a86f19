"""
Failure ledger: durable per-entity sync failures with retry scheduling.

One row exists per (entity kind, entity id). Failed postings upsert the row;
the reprocessor retries due pending rows with exponential backoff and marks
them resolved or discarded.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy import case, delete, func, select, update

from ledgersync.core.clock import utcnow
from ledgersync.core.database import Database, dialect_insert
from ledgersync.core.exceptions import ValidationError
from ledgersync.models.sync_failure import EntityKind, FailureStatus, SyncFailure
from .data_access import ResilientDataAccess, describe_error, is_retriable

logger = structlog.get_logger(__name__)


def compute_backoff(attempts: int, base_seconds: int = 300, max_seconds: int = 86400) -> timedelta:
    """``min(base * 2^attempts, max)`` as a timedelta."""
    return timedelta(seconds=min(base_seconds * (2 ** max(attempts, 0)), max_seconds))


@dataclass
class ReprocessSummary:
    processed: int = 0
    resolved: int = 0
    rescheduled: int = 0
    discarded: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class FailureLedger:
    """Records, schedules and resolves sync failures."""

    def __init__(
        self,
        database: Database,
        data_access: ResilientDataAccess,
        max_attempts: int = 10,
        base_backoff: int = 300,
        max_backoff: int = 86400,
    ):
        self.database = database
        self.data_access = data_access
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.logger = logger.bind(service="failure_ledger")

    async def record_failure(self, kind: EntityKind, entity_id: str, error: BaseException) -> SyncFailure:
        """Upsert the failure row for (kind, entity_id)."""
        kind = EntityKind(kind)
        now = utcnow()
        info = describe_error(error)
        retriable = is_retriable(error)

        async def upsert() -> SyncFailure:
            insert = dialect_insert(self.database.dialect)
            table = SyncFailure.__table__
            stmt = insert(table).values(
                entity_kind=kind.value,
                entity_id=entity_id,
                error_name=info.name,
                error_code=info.code,
                error_message=info.message,
                error_labels=info.labels,
                retriable=retriable,
                status=FailureStatus.PENDING.value if retriable else FailureStatus.DISCARDED.value,
                attempt_count=0,
                last_error_at=now,
                next_attempt_at=now + timedelta(seconds=self.base_backoff) if retriable else None,
                resolved_at=None,
                created_at=now,
                updated_at=now,
            )
            was_pending = table.c.status == FailureStatus.PENDING.value
            stmt = stmt.on_conflict_do_update(
                index_elements=["entity_kind", "entity_id"],
                set_={
                    "error_name": stmt.excluded.error_name,
                    "error_code": stmt.excluded.error_code,
                    "error_message": stmt.excluded.error_message,
                    "error_labels": stmt.excluded.error_labels,
                    "retriable": stmt.excluded.retriable,
                    "status": stmt.excluded.status,
                    # A reopened failure starts a fresh retry budget
                    "attempt_count": case((was_pending, table.c.attempt_count), else_=0),
                    "next_attempt_at": case(
                        (was_pending & stmt.excluded.retriable, func.coalesce(table.c.next_attempt_at, stmt.excluded.next_attempt_at)),
                        else_=stmt.excluded.next_attempt_at,
                    ),
                    "last_error_at": stmt.excluded.last_error_at,
                    "updated_at": stmt.excluded.updated_at,
                    "resolved_at": None,
                },
            )
            async with self.database.session() as session:
                await session.execute(stmt)
                row = await session.execute(
                    select(SyncFailure).where(
                        SyncFailure.entity_kind == kind.value,
                        SyncFailure.entity_id == entity_id,
                    )
                )
                return row.scalar_one()

        failure = await self.data_access.execute_with_retry(upsert, description="record_sync_failure")
        self.logger.warning(
            "Sync failure recorded",
            kind=kind.value,
            entity_id=entity_id,
            retriable=retriable,
            status=failure.status,
            error=info.message
        )
        return failure

    async def resolve(self, kind: EntityKind, entity_id: str) -> bool:
        """Mark the entity's pending failure resolved. Returns True if one existed."""
        kind = EntityKind(kind)

        async def mark() -> int:
            async with self.database.session() as session:
                result = await session.execute(
                    update(SyncFailure)
                    .where(
                        SyncFailure.entity_kind == kind.value,
                        SyncFailure.entity_id == entity_id,
                        SyncFailure.status == FailureStatus.PENDING.value,
                    )
                    .values(status=FailureStatus.RESOLVED.value, resolved_at=utcnow(), next_attempt_at=None)
                )
                return result.rowcount

        resolved = await self.data_access.execute_with_retry(mark, description="resolve_sync_failure")
        if resolved:
            self.logger.info("Sync failure resolved", kind=kind.value, entity_id=entity_id)
        return bool(resolved)

    async def get_failure(self, failure_id: int) -> Optional[SyncFailure]:
        async with self.database.session() as session:
            return await session.get(SyncFailure, failure_id)

    async def get_failure_for(self, kind: EntityKind, entity_id: str) -> Optional[SyncFailure]:
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncFailure).where(
                    SyncFailure.entity_kind == EntityKind(kind).value,
                    SyncFailure.entity_id == entity_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_failures(self, status: Optional[str] = None, limit: int = 50) -> List[SyncFailure]:
        if status is not None and status not in {s.value for s in FailureStatus}:
            raise ValidationError(f"Unknown failure status: {status}")
        limit = max(1, min(limit, 500))

        query = select(SyncFailure).order_by(SyncFailure.last_error_at.desc()).limit(limit)
        if status:
            query = query.where(SyncFailure.status == status)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_pending(self) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                select(func.count(SyncFailure.id)).where(SyncFailure.status == FailureStatus.PENDING.value)
            )
            return result.scalar_one()

    async def due_failures(self, limit: int = 100, now: Optional[datetime] = None) -> List[SyncFailure]:
        now = now or utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncFailure)
                .where(
                    SyncFailure.status == FailureStatus.PENDING.value,
                    SyncFailure.next_attempt_at.is_not(None),
                    SyncFailure.next_attempt_at <= now,
                )
                .order_by(SyncFailure.next_attempt_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_retry_failed(self, failure: SyncFailure, error: BaseException) -> str:
        """Record a failed retry; returns the new status."""
        now = utcnow()
        info = describe_error(error)
        retriable = is_retriable(error)
        attempts = failure.attempt_count + 1

        if not retriable or attempts >= self.max_attempts:
            status = FailureStatus.DISCARDED.value
            next_attempt_at = None
        else:
            status = FailureStatus.PENDING.value
            next_attempt_at = now + compute_backoff(failure.attempt_count, self.base_backoff, self.max_backoff)

        async def save() -> None:
            async with self.database.session() as session:
                await session.execute(
                    update(SyncFailure)
                    .where(SyncFailure.id == failure.id)
                    .values(
                        attempt_count=attempts,
                        status=status,
                        retriable=retriable,
                        next_attempt_at=next_attempt_at,
                        last_error_at=now,
                        error_name=info.name,
                        error_code=info.code,
                        error_message=info.message,
                        error_labels=info.labels,
                    )
                )

        await self.data_access.execute_with_retry(save, description="reschedule_sync_failure")
        return status

    async def mark_resolved(self, failure_id: int) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(SyncFailure)
                .where(SyncFailure.id == failure_id)
                .values(status=FailureStatus.RESOLVED.value, resolved_at=utcnow(), next_attempt_at=None)
            )

    async def reprocess_due(
        self,
        retry: Callable[[EntityKind, str], Awaitable[None]],
        limit: int = 100,
    ) -> ReprocessSummary:
        """Retry every due pending failure through ``retry(kind, entity_id)``."""
        summary = ReprocessSummary()
        for failure in await self.due_failures(limit=limit):
            summary.processed += 1
            try:
                await retry(EntityKind(failure.entity_kind), failure.entity_id)
            except Exception as e:
                status = await self.mark_retry_failed(failure, e)
                if status == FailureStatus.DISCARDED.value:
                    summary.discarded += 1
                    self.logger.error(
                        "Sync failure discarded",
                        kind=failure.entity_kind,
                        entity_id=failure.entity_id,
                        attempts=failure.attempt_count + 1,
                        error=str(e)
                    )
                else:
                    summary.rescheduled += 1
                continue

            await self.mark_resolved(failure.id)
            summary.resolved += 1

        if summary.processed:
            self.logger.info("Failure reprocessing finished", **summary.to_dict())
        return summary

    async def purge(self, older_than: datetime) -> int:
        """Delete resolved/discarded rows last touched before ``older_than``."""
        async with self.database.session() as session:
            result = await session.execute(
                delete(SyncFailure).where(
                    SyncFailure.status.in_([FailureStatus.RESOLVED.value, FailureStatus.DISCARDED.value]),
                    SyncFailure.updated_at < older_than,
                )
            )
            return result.rowcount
