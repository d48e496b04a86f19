"""
Push detector backed by PostgreSQL LISTEN/NOTIFY.

Row triggers on the watched tables publish ``{table, op, id}`` notifications
on a channel. A dedicated asyncpg connection listens; notifications are queued
and dispatched one at a time, each resolved into a change event by reading
the row's current state.
"""

import asyncio
import json
from typing import List, Optional

import asyncpg
import structlog
from sqlalchemy import text

from ledgersync.core.database import Database
from ledgersync.core.exceptions import ChangeFeedUnsupportedError
from ledgersync.models.sync_failure import EntityKind
from ledgersync.services.operational_reader import OperationalReader
from .base import DetectionStrategy, EventHandler
from .types import ChangeEvent, Deleted, Inserted, Updated

logger = structlog.get_logger(__name__)

WATCHED_TABLES = {
    "payments": EntityKind.PAYMENT,
    "properties": EntityKind.PROPERTY,
    "users": EntityKind.USER,
}

TRIGGER_NAME = "ledgersync_change_trigger"

NOTIFY_FUNCTION = """
CREATE OR REPLACE FUNCTION ledgersync_notify_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        TG_ARGV[0],
        json_build_object(
            'table', TG_TABLE_NAME,
            'op', TG_OP,
            'id', CASE WHEN TG_OP = 'DELETE' THEN OLD.id ELSE NEW.id END
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql
"""


def trigger_statements(channel: str) -> List[str]:
    statements = [NOTIFY_FUNCTION]
    for table in WATCHED_TABLES:
        statements.append(f"DROP TRIGGER IF EXISTS {TRIGGER_NAME} ON {table}")
        statements.append(
            f"CREATE TRIGGER {TRIGGER_NAME} AFTER INSERT OR UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION ledgersync_notify_change('{channel}')"
        )
    return statements


class PushDetector(DetectionStrategy):
    """LISTEN/NOTIFY change feed on the operational store."""

    mode = "push"

    def __init__(
        self,
        database: Database,
        reader: OperationalReader,
        channel: str = "ledgersync_changes",
        install_triggers: bool = True,
    ):
        super().__init__()
        self.database = database
        self.reader = reader
        self.channel = channel
        self.install_triggers = install_triggers
        self._connection: Optional[asyncpg.Connection] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="push_detector", channel=channel)

    async def start(self, handler: EventHandler) -> None:
        if self.database.dialect != "postgresql":
            raise ChangeFeedUnsupportedError(self.database.dialect)
        if self.is_running:
            return

        self._handler = handler
        if self.install_triggers:
            await self._install_triggers()

        dsn = self.database.engine.url.set(drivername="postgresql").render_as_string(hide_password=False)
        self._connection = await asyncpg.connect(dsn)
        self._connection.add_termination_listener(self._on_terminated)
        await self._connection.add_listener(self.channel, self._on_notification)

        self._consumer = asyncio.create_task(self._consume(), name="push-detector-dispatch")
        self.is_running = True
        self.logger.info("Change feed subscription started", tables=list(WATCHED_TABLES))

    async def stop(self) -> None:
        self.is_running = False
        if self._connection is not None:
            try:
                await self._connection.remove_listener(self.channel, self._on_notification)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                self.logger.warning("Failed to remove listener", error=str(e))
            await self._connection.close()
            self._connection = None

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        self.logger.info("Change feed subscription stopped")

    async def _install_triggers(self) -> None:
        async with self.database.engine.begin() as conn:
            for statement in trigger_statements(self.channel):
                await conn.execute(text(statement))
        self.logger.info("Change feed triggers installed")

    def _on_notification(self, connection, pid, channel, payload) -> None:
        self._queue.put_nowait(payload)

    def _on_terminated(self, connection) -> None:
        # Connection lost; health reporting picks this up through is_running
        self.is_running = False
        self.logger.error("Change feed connection terminated")

    async def _consume(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                event = await self.resolve_notification(payload)
                if event is not None:
                    await self._emit(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Failed to dispatch change notification", payload=payload, error=str(e))
            finally:
                self._queue.task_done()

    async def resolve_notification(self, payload: str) -> Optional[ChangeEvent]:
        """Turn a raw notification into a change event."""
        data = json.loads(payload)
        kind = WATCHED_TABLES.get(data.get("table"))
        if kind is None:
            return None
        entity_id = str(data["id"])
        op = data.get("op")

        if op == "DELETE":
            return Deleted(kind, entity_id)

        snapshot = await self._load(kind, entity_id)
        if snapshot is None:
            # Deleted between the notification and the read
            return Deleted(kind, entity_id)
        if op == "INSERT":
            return Inserted(kind, entity_id, snapshot)
        return Updated(kind, entity_id, snapshot)

    async def _load(self, kind: EntityKind, entity_id: str):
        if kind is EntityKind.PAYMENT:
            return await self.reader.get_payment(entity_id)
        if kind is EntityKind.PROPERTY:
            return await self.reader.get_property(entity_id)
        if kind is EntityKind.USER:
            return await self.reader.get_user(entity_id)
        raise ValueError(f"Unknown entity kind: {kind}")

    def get_status(self) -> dict:
        status = super().get_status()
        status["channel"] = self.channel
        status["queued"] = self._queue.qsize()
        return status
