"""
Ledger-event backlog.

Owner-income postings that fail on the live path are queued here and drained
every few seconds by the sync service, independently of detection mode.
"""

import random
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ledgersync.core.clock import utcnow
from ledgersync.core.database import Database
from ledgersync.models.ledger_event import (
    OPEN_EVENT_STATUSES,
    LedgerEvent,
    LedgerEventStatus,
    LedgerEventType,
)
from .data_access import ResilientDataAccess

logger = structlog.get_logger(__name__)

BASE_DELAY_SECONDS = 5
MAX_DELAY_SECONDS = 600
STALE_PROCESSING = timedelta(minutes=5)


def event_backoff(attempts: int) -> timedelta:
    """``min(5s * 2^(n-1), 10min)`` plus up to one second of jitter."""
    delay = min(BASE_DELAY_SECONDS * (2 ** max(attempts - 1, 0)), MAX_DELAY_SECONDS)
    return timedelta(seconds=delay + random.uniform(0, 1))


@dataclass
class DrainSummary:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    requeued_stale: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class LedgerEventQueue:
    """Durable queue of owner-income postings awaiting retry."""

    def __init__(self, database: Database, data_access: ResilientDataAccess):
        self.database = database
        self.data_access = data_access
        self.logger = logger.bind(service="ledger_events")

    async def enqueue_owner_income(self, payment_id: str, reason: Optional[str] = None) -> bool:
        """Queue an owner-income posting. Returns False if one is already open."""

        async def insert() -> bool:
            async with self.database.session() as session:
                existing = await session.execute(
                    select(LedgerEvent.id).where(
                        LedgerEvent.event_type == LedgerEventType.OWNER_INCOME.value,
                        LedgerEvent.payment_id == payment_id,
                        LedgerEvent.status.in_(OPEN_EVENT_STATUSES),
                    )
                )
                if existing.first() is not None:
                    return False
                session.add(LedgerEvent(
                    event_type=LedgerEventType.OWNER_INCOME.value,
                    payment_id=payment_id,
                    status=LedgerEventStatus.PENDING.value,
                    attempt_count=0,
                    next_attempt_at=utcnow(),
                    last_error=reason,
                ))
                await session.flush()
                return True

        try:
            created = await self.data_access.execute_with_retry(insert, description="enqueue_ledger_event")
        except IntegrityError:
            return False

        if created:
            self.logger.info("Owner income queued for retry", payment_id=payment_id, reason=reason)
        return created

    async def requeue_stale(self, now: Optional[datetime] = None) -> int:
        """Return events stuck in ``processing`` to ``failed`` so they are picked up again."""
        now = now or utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                update(LedgerEvent)
                .where(
                    LedgerEvent.status == LedgerEventStatus.PROCESSING.value,
                    LedgerEvent.updated_at < now - STALE_PROCESSING,
                )
                .values(status=LedgerEventStatus.FAILED.value, next_attempt_at=now, updated_at=now)
            )
            return result.rowcount

    async def _claim(self, event_id: int) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(LedgerEvent)
                .where(
                    LedgerEvent.id == event_id,
                    LedgerEvent.status.in_([LedgerEventStatus.PENDING.value, LedgerEventStatus.FAILED.value]),
                )
                .values(status=LedgerEventStatus.PROCESSING.value, updated_at=utcnow())
            )
            return result.rowcount == 1

    async def _finish(self, event: LedgerEvent, error: Optional[BaseException]) -> None:
        now = utcnow()
        if error is None:
            values = dict(
                status=LedgerEventStatus.COMPLETED.value,
                processed_at=now,
                last_error=None,
                attempt_count=event.attempt_count + 1,
            )
        else:
            attempts = event.attempt_count + 1
            values = dict(
                status=LedgerEventStatus.FAILED.value,
                attempt_count=attempts,
                last_error=str(error)[:2000],
                next_attempt_at=now + event_backoff(attempts),
            )
        async with self.database.session() as session:
            await session.execute(update(LedgerEvent).where(LedgerEvent.id == event.id).values(**values))

    async def due_events(self, limit: int = 50, now: Optional[datetime] = None) -> List[LedgerEvent]:
        now = now or utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                select(LedgerEvent)
                .where(
                    LedgerEvent.status.in_([LedgerEventStatus.PENDING.value, LedgerEventStatus.FAILED.value]),
                    LedgerEvent.next_attempt_at <= now,
                )
                .order_by(LedgerEvent.next_attempt_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def process_pending(
        self,
        handler: Callable[[str], Awaitable[object]],
        limit: int = 50,
    ) -> DrainSummary:
        """Claim due events and run ``handler(payment_id)`` for each."""
        summary = DrainSummary(requeued_stale=await self.requeue_stale())

        for event in await self.due_events(limit=limit):
            if not await self._claim(event.id):
                continue
            summary.claimed += 1
            try:
                await handler(event.payment_id)
            except Exception as e:
                summary.failed += 1
                self.logger.warning(
                    "Ledger event failed",
                    event_id=event.id,
                    payment_id=event.payment_id,
                    attempts=event.attempt_count + 1,
                    error=str(e)
                )
                await self._finish(event, e)
                continue
            summary.completed += 1
            await self._finish(event, None)

        if summary.claimed or summary.requeued_stale:
            self.logger.info("Ledger events drained", **summary.to_dict())
        return summary

    async def count_open(self) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                select(func.count(LedgerEvent.id)).where(LedgerEvent.status.in_(OPEN_EVENT_STATUSES))
            )
            return result.scalar_one()

    async def cleanup(self, older_than: datetime) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                delete(LedgerEvent).where(
                    LedgerEvent.status == LedgerEventStatus.COMPLETED.value,
                    or_(LedgerEvent.processed_at < older_than, LedgerEvent.processed_at.is_(None)),
                )
            )
            return result.rowcount
