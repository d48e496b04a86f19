"""
Timestamp polling detector, used when no change feed is available.

Each entity kind has its own loop and interval. A tick reads rows whose
``updated_at`` falls in ``[now - interval * lookback_factor, now]``; the
overlap between windows means a row may be seen twice, which downstream
posting tolerates.
"""

import asyncio
from datetime import timedelta
from typing import Dict, Optional

import structlog

from ledgersync.core.clock import utcnow
from ledgersync.models.operational import Payment, Property, User
from ledgersync.models.sync_failure import EntityKind
from ledgersync.services.operational_reader import OperationalReader
from .base import DetectionStrategy, EventHandler
from .types import Inserted, Updated, snapshot_from_model

logger = structlog.get_logger(__name__)

MODELS = {
    EntityKind.PAYMENT: Payment,
    EntityKind.PROPERTY: Property,
    EntityKind.USER: User,
}

MAX_PAGES_PER_TICK = 50


class PollDetector(DetectionStrategy):
    """Three independent polling loops over the operational store."""

    mode = "poll"

    def __init__(
        self,
        reader: OperationalReader,
        intervals: Optional[Dict[EntityKind, float]] = None,
        lookback_factor: float = 2.0,
        batch_size: int = 100,
    ):
        super().__init__()
        self.reader = reader
        self.intervals = intervals or {
            EntityKind.PAYMENT: 30.0,
            EntityKind.PROPERTY: 60.0,
            EntityKind.USER: 120.0,
        }
        self.lookback_factor = lookback_factor
        self.batch_size = batch_size
        self._tasks: Dict[EntityKind, asyncio.Task] = {}
        self.last_poll: Dict[EntityKind, str] = {}
        self.logger = logger.bind(service="poll_detector")

    async def start(self, handler: EventHandler) -> None:
        if self.is_running:
            return
        self._handler = handler
        self.is_running = True
        for kind in MODELS:
            self._tasks[kind] = asyncio.create_task(self._poll_loop(kind), name=f"poll-{kind.value}")
        self.logger.info(
            "Polling detection started",
            intervals={k.value: v for k, v in self.intervals.items()}
        )

    async def stop(self) -> None:
        self.is_running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self.logger.info("Polling detection stopped")

    async def _poll_loop(self, kind: EntityKind) -> None:
        interval = self.intervals[kind]
        while self.is_running:
            try:
                await self.poll_once(kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Poll tick failed", kind=kind.value, error=str(e))
            await asyncio.sleep(interval)

    async def poll_once(self, kind: EntityKind) -> int:
        """Run one polling tick for ``kind``; returns the number of events emitted."""
        kind = EntityKind(kind)
        now = utcnow()
        since = now - timedelta(seconds=self.intervals[kind] * self.lookback_factor)
        model = MODELS[kind]

        emitted = 0
        cursor = None
        for _ in range(MAX_PAGES_PER_TICK):
            rows = await self.reader.changed_since(model, since, limit=self.batch_size, after=now, cursor=cursor)
            for row in rows:
                snapshot = snapshot_from_model(kind, row)
                if row.created_at is not None and row.created_at == row.updated_at:
                    event = Inserted(kind, row.id, snapshot)
                else:
                    event = Updated(kind, row.id, snapshot)
                try:
                    await self._emit(event)
                    emitted += 1
                except Exception as e:
                    self.logger.error("Event handler failed", kind=kind.value, entity_id=row.id, error=str(e))
            if len(rows) < self.batch_size:
                break
            # Rows sharing a timestamp are split across pages by id
            cursor = (rows[-1].updated_at, rows[-1].id)

        self.last_poll[kind] = now.isoformat()
        if emitted:
            self.logger.debug("Poll tick emitted events", kind=kind.value, events=emitted)
        return emitted

    def get_status(self) -> dict:
        status = super().get_status()
        status["intervals"] = {k.value: v for k, v in self.intervals.items()}
        status["lastPoll"] = {k.value: v for k, v in self.last_poll.items()}
        return status
