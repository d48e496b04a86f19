"""
Test durable failure recording and reprocessing.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ledgersync.core.clock import utcnow
from ledgersync.core.exceptions import ValidationError
from ledgersync.models.sync_failure import EntityKind, FailureStatus, SyncFailure
from ledgersync.services.failure_ledger import compute_backoff


async def make_due(ctx, failure_id: int, attempt_count: int = None) -> None:
    values = {"next_attempt_at": utcnow() - timedelta(seconds=1)}
    if attempt_count is not None:
        values["attempt_count"] = attempt_count
    async with ctx.ledger_db.session() as session:
        await session.execute(update(SyncFailure).where(SyncFailure.id == failure_id).values(**values))


def test_compute_backoff_is_capped():
    assert compute_backoff(0) == timedelta(seconds=300)
    assert compute_backoff(1) == timedelta(seconds=600)
    assert compute_backoff(3) == timedelta(seconds=2400)
    assert compute_backoff(12) == timedelta(hours=24)


@pytest.mark.asyncio
async def test_retriable_failure_is_pending_with_backoff(context):
    before = utcnow()
    failure = await context.failure_ledger.record_failure(EntityKind.PAYMENT, "pay-1", ConnectionError("reset"))

    assert failure.status == FailureStatus.PENDING.value
    assert failure.retriable is True
    assert failure.attempt_count == 0
    assert failure.next_attempt_at >= before + timedelta(seconds=300)
    assert await context.failure_ledger.count_pending() == 1


@pytest.mark.asyncio
async def test_non_retriable_failure_is_discarded(context):
    failure = await context.failure_ledger.record_failure(
        EntityKind.PAYMENT, "pay-2", IntegrityError("INSERT", {}, Exception("duplicate"))
    )
    assert failure.status == FailureStatus.DISCARDED.value
    assert failure.next_attempt_at is None
    assert await context.failure_ledger.count_pending() == 0


@pytest.mark.asyncio
async def test_one_row_per_entity(context):
    """Repeated failures upsert the same row."""
    first = await context.failure_ledger.record_failure(EntityKind.PROPERTY, "prop-9", ConnectionError("a"))
    second = await context.failure_ledger.record_failure(EntityKind.PROPERTY, "prop-9", ConnectionError("b"))

    assert first.id == second.id
    assert second.error_message == "b"
    assert len(await context.failure_ledger.list_failures()) == 1


@pytest.mark.asyncio
async def test_resolve_marks_pending_failure(context):
    await context.failure_ledger.record_failure(EntityKind.USER, "user-1", ConnectionError("down"))
    assert await context.failure_ledger.resolve(EntityKind.USER, "user-1") is True
    failure = await context.failure_ledger.get_failure_for(EntityKind.USER, "user-1")
    assert failure.status == FailureStatus.RESOLVED.value
    assert await context.failure_ledger.resolve(EntityKind.USER, "user-1") is False


@pytest.mark.asyncio
async def test_reprocess_reschedules_then_resolves(context):
    ledger = context.failure_ledger
    failure = await ledger.record_failure(EntityKind.PAYMENT, "pay-3", ConnectionError("down"))
    await make_due(context, failure.id)

    async def still_down(kind, entity_id):
        raise ConnectionError("still down")

    before = utcnow()
    summary = await ledger.reprocess_due(still_down)
    assert summary.processed == 1
    assert summary.rescheduled == 1

    failure = await ledger.get_failure(failure.id)
    assert failure.status == FailureStatus.PENDING.value
    assert failure.attempt_count == 1
    assert failure.next_attempt_at >= before + timedelta(seconds=300)

    # Not due yet
    assert (await ledger.reprocess_due(still_down)).processed == 0

    await make_due(context, failure.id)
    retried = []

    async def recovered(kind, entity_id):
        retried.append((kind, entity_id))

    summary = await ledger.reprocess_due(recovered)
    assert summary.resolved == 1
    assert retried == [(EntityKind.PAYMENT, "pay-3")]
    assert (await ledger.get_failure(failure.id)).status == FailureStatus.RESOLVED.value


@pytest.mark.asyncio
async def test_discarded_after_max_attempts(context):
    ledger = context.failure_ledger
    failure = await ledger.record_failure(EntityKind.PAYMENT, "pay-4", ConnectionError("down"))
    await make_due(context, failure.id, attempt_count=ledger.max_attempts - 1)

    async def still_down(kind, entity_id):
        raise ConnectionError("still down")

    summary = await ledger.reprocess_due(still_down)
    assert summary.discarded == 1
    failure = await ledger.get_failure(failure.id)
    assert failure.status == FailureStatus.DISCARDED.value
    assert failure.attempt_count == ledger.max_attempts


@pytest.mark.asyncio
async def test_list_failures_rejects_unknown_status(context):
    with pytest.raises(ValidationError):
        await context.failure_ledger.list_failures(status="exploded")
