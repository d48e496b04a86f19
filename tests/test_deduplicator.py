"""
Test duplicate archival: earliest posting survives, totals converge.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from ledgersync.core.clock import utcnow
from ledgersync.services.ledger_store import AccountKey

from conftest import insert_raw_posting as insert_raw


@pytest.mark.asyncio
async def test_keeps_earliest_posting(context):
    """Rows dated t3, t1, t2 (inserted in that order) keep t1 and archive the rest."""
    account, _ = await context.store.ensure_account(AccountKey.for_company("co-1"), company_id="co-1")
    t1 = utcnow() - timedelta(days=3)
    t2 = t1 + timedelta(hours=1)
    t3 = t1 + timedelta(hours=2)
    for date in (t3, t1, t2):
        await insert_raw(context, account, "pay-1", "100.00", date)
    await insert_raw(context, account, "pay-2", "50.00", t1)
    await context.store.refresh_totals(account.id)
    assert (await context.store.get_account(account.id)).total_income == Decimal("350.00")

    result = await context.deduplicator.deduplicate(account.id)

    assert result.archived_count == 2
    assert result.payment_ids == ["pay-1"]
    live = await context.store.live_transactions(account.id, payment_id="pay-1")
    assert len(live) == 1
    assert live[0].date == t1

    archived = [tx for tx in await context.store.transactions(account.id) if tx.is_archived]
    assert {tx.archived_reason for tx in archived} == {f"duplicate of transaction {live[0].id}"}
    assert (await context.store.get_account(account.id)).total_income == Decimal("150.00")


@pytest.mark.asyncio
async def test_deduplication_converges(context):
    """A second pass finds nothing to do."""
    account, _ = await context.store.ensure_account(AccountKey.for_company("co-1"), company_id="co-1")
    now = utcnow()
    await insert_raw(context, account, "pay-1", "100.00", now)
    await insert_raw(context, account, "pay-1", "100.00", now)

    first = await context.deduplicator.deduplicate_all()
    second = await context.deduplicator.deduplicate_all()

    assert sum(r.archived_count for r in first) == 1
    assert second == []
    # Same date: insertion order breaks the tie
    live = await context.store.live_transactions(account.id)
    assert live[0].id == min(tx.id for tx in await context.store.transactions(account.id))


@pytest.mark.asyncio
async def test_property_ledger_duplicates(context):
    """Duplicates written before the unique index existed are archived per payment."""
    async with context.ledger_db.engine.begin() as conn:
        await conn.execute(text("DROP INDEX uq_ledger_tx_payment_active"))

    account, _ = await context.store.ensure_account(AccountKey.for_property("prop-1", "rental"), company_id="co-1")
    now = utcnow()
    await insert_raw(context, account, "pay-7", "900.00", now)
    await insert_raw(context, account, "pay-7", "900.00", now + timedelta(minutes=1))

    results = await context.deduplicator.deduplicate_payment("pay-7")

    assert [r.archived_count for r in results] == [1]
    assert (await context.store.get_account(account.id)).running_balance == Decimal("900.00")
