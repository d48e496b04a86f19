"""
Test change detection: poll ticks, notification resolution and fallback.
"""

import json
from datetime import timedelta

import pytest

from ledgersync.core.clock import utcnow
from ledgersync.core.exceptions import ChangeFeedUnsupportedError
from ledgersync.detection.factory import start_detector
from ledgersync.detection.poll_detector import PollDetector
from ledgersync.detection.push_detector import PushDetector, trigger_statements
from ledgersync.detection.types import Deleted, Inserted, Updated
from ledgersync.models.sync_failure import EntityKind

from conftest import make_payment, make_property, seed


class Recorder:
    def __init__(self, fail_on=None):
        self.events = []
        self.fail_on = fail_on

    async def __call__(self, event):
        if event.entity_id == self.fail_on:
            raise RuntimeError("handler exploded")
        self.events.append(event)


class FailingPush:
    mode = "push"

    def __init__(self, error):
        self.error = error

    async def start(self, handler):
        raise self.error


@pytest.mark.asyncio
async def test_poll_tick_classifies_inserts_and_updates(context):
    now = utcnow()
    await seed(
        context,
        make_payment("pay-new", created_at=now, updated_at=now),
        make_payment("pay-edited", created_at=now - timedelta(days=2), updated_at=now),
        make_payment("pay-old", created_at=now - timedelta(days=2), updated_at=now - timedelta(days=2)),
    )
    recorder = Recorder()
    detector = PollDetector(context.reader)
    detector._handler = recorder

    emitted = await detector.poll_once(EntityKind.PAYMENT)

    assert emitted == 2
    by_id = {e.entity_id: e for e in recorder.events}
    assert isinstance(by_id["pay-new"], Inserted)
    assert isinstance(by_id["pay-edited"], Updated)
    assert by_id["pay-new"].snapshot.amount == make_payment().amount
    assert "pay-old" not in by_id
    assert EntityKind.PAYMENT in detector.last_poll


@pytest.mark.asyncio
async def test_poll_pages_through_rows_sharing_a_timestamp(context):
    """A bulk update stamps many rows alike; each must be emitted exactly once."""
    stamp = utcnow() - timedelta(seconds=1)
    await seed(context, *[
        make_payment(f"pay-{i:03d}", created_at=stamp - timedelta(days=1), updated_at=stamp)
        for i in range(25)
    ])
    recorder = Recorder()
    detector = PollDetector(context.reader, batch_size=10)
    detector._handler = recorder

    emitted = await detector.poll_once(EntityKind.PAYMENT)

    seen = [e.entity_id for e in recorder.events]
    assert emitted == 25
    assert len(seen) == 25
    assert sorted(seen) == [f"pay-{i:03d}" for i in range(25)]


@pytest.mark.asyncio
async def test_poll_handler_failure_does_not_stop_tick(context):
    now = utcnow()
    await seed(
        context,
        make_property("prop-1", updated_at=now),
        make_property("prop-2", updated_at=now),
    )
    recorder = Recorder(fail_on="prop-1")
    detector = PollDetector(context.reader)
    detector._handler = recorder

    assert await detector.poll_once(EntityKind.PROPERTY) == 1
    assert [e.entity_id for e in recorder.events] == ["prop-2"]


@pytest.mark.asyncio
async def test_notifications_resolve_to_change_events(context):
    await seed(context, make_property(), make_payment())
    detector = PushDetector(context.operational_db, context.reader)

    inserted = await detector.resolve_notification(json.dumps({"table": "payments", "op": "INSERT", "id": "pay-1"}))
    updated = await detector.resolve_notification(json.dumps({"table": "properties", "op": "UPDATE", "id": "prop-1"}))
    deleted = await detector.resolve_notification(json.dumps({"table": "users", "op": "DELETE", "id": "owner-1"}))
    vanished = await detector.resolve_notification(json.dumps({"table": "payments", "op": "UPDATE", "id": "pay-x"}))
    ignored = await detector.resolve_notification(json.dumps({"table": "invoices", "op": "INSERT", "id": "inv-1"}))

    assert isinstance(inserted, Inserted) and inserted.snapshot.id == "pay-1"
    assert isinstance(updated, Updated) and updated.kind is EntityKind.PROPERTY
    assert deleted == Deleted(EntityKind.USER, "owner-1")
    assert vanished == Deleted(EntityKind.PAYMENT, "pay-x")
    assert ignored is None


def test_trigger_statements_cover_watched_tables():
    statements = trigger_statements("my_channel")
    creates = [s for s in statements if s.startswith("CREATE TRIGGER")]
    assert len(creates) == 3
    assert all("ledgersync_notify_change('my_channel')" in s for s in creates)


@pytest.mark.asyncio
async def test_push_is_unsupported_on_sqlite(context):
    detector = PushDetector(context.operational_db, context.reader)
    with pytest.raises(ChangeFeedUnsupportedError):
        await detector.start(Recorder())
    assert detector.is_running is False


@pytest.mark.asyncio
async def test_realtime_sync_falls_back_to_polling(context):
    """Without a change feed the sync service runs in poll mode."""
    mode = await context.sync_service.start_realtime_sync()
    try:
        assert mode == "poll"
        assert context.sync_service.is_running is True
        assert context.sync_service.get_sync_status()["mode"] == "poll"
    finally:
        await context.sync_service.stop_realtime_sync()
    assert context.sync_service.is_running is False


@pytest.mark.asyncio
async def test_other_start_errors_propagate(context):
    """Only an unsupported feed triggers the fallback."""
    poll = PollDetector(context.reader)
    with pytest.raises(ValueError):
        await start_detector(FailingPush(ValueError("bad config")), poll, Recorder(), context.data_access)
    assert poll.is_running is False

    detector = await start_detector(
        FailingPush(ChangeFeedUnsupportedError("sqlite")), poll, Recorder(), context.data_access
    )
    try:
        assert detector is poll
        assert poll.is_running is True
    finally:
        await poll.stop()
