"""
Test ledger store invariants: idempotent appends, append-only history,
balance arithmetic and payouts.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from ledgersync.core.clock import utcnow
from ledgersync.core.exceptions import ImmutableLedgerError, InsufficientBalanceError, ValidationError
from ledgersync.models.ledger import LedgerTransaction, PayoutStatus, TransactionType
from ledgersync.services.ledger_store import AccountKey, NewTransaction


def income(payment_id: str, amount: str = "900.00", key: str = None) -> NewTransaction:
    return NewTransaction(
        type=TransactionType.INCOME.value,
        amount=Decimal(amount),
        date=utcnow(),
        description=f"Rental income - {payment_id}",
        payment_id=payment_id,
        idempotency_key=key or f"owner_income:{payment_id}",
    )


async def property_ledger(ctx, property_id: str = "prop-1"):
    account, _ = await ctx.store.ensure_account(
        AccountKey.for_property(property_id, "rental"),
        company_id="co-1",
        display_name="12 High Street",
    )
    return account


@pytest.mark.asyncio
async def test_ensure_account_is_idempotent(context):
    key = AccountKey.for_company("co-1")
    first, created = await context.store.ensure_account(key, company_id="co-1")
    second, created_again = await context.store.ensure_account(key, company_id="co-1")

    assert created is True
    assert created_again is False
    assert first.id == second.id


@pytest.mark.asyncio
async def test_sequential_append_is_idempotent(context):
    account = await property_ledger(context)

    first = await context.store.append_transaction(account.id, income("pay-1"))
    second = await context.store.append_transaction(account.id, income("pay-1"))

    assert first.appended is True
    assert second.appended is False
    live = await context.store.live_transactions(account.id)
    assert len(live) == 1
    refreshed = await context.store.get_account(account.id)
    assert refreshed.total_income == Decimal("900.00")


@pytest.mark.asyncio
async def test_concurrent_append_posts_once(context):
    """Two writers racing on the same payment leave exactly one live row."""
    account = await property_ledger(context)

    results = await asyncio.gather(
        context.store.append_transaction(account.id, income("pay-1")),
        context.store.append_transaction(account.id, income("pay-1")),
    )

    assert sorted(r.appended for r in results) == [False, True]
    live = await context.store.live_transactions(account.id, payment_id="pay-1")
    assert len(live) == 1
    assert (await context.store.get_account(account.id)).total_income == Decimal("900.00")


@pytest.mark.asyncio
async def test_balance_invariant(context):
    """running_balance = income - expenses - payouts, from live transactions."""
    account = await property_ledger(context)
    await context.store.append_transaction(account.id, income("pay-1", "900.00"))
    await context.store.append_transaction(account.id, income("pay-2", "450.50"))
    await context.store.record_expense(account.id, Decimal("120.25"), "Boiler repair", category="repairs",
                                       type=TransactionType.REPAIR.value)
    await context.store.record_owner_payout(account.id, Decimal("1000.00"), "PO-1", "Ada Owner")

    refreshed = await context.store.get_account(account.id)
    assert refreshed.total_income == Decimal("1350.50")
    assert refreshed.total_expenses == Decimal("120.25")
    assert refreshed.total_owner_payouts == Decimal("1000.00")
    assert refreshed.running_balance == Decimal("230.25")
    assert refreshed.running_balance == (
        refreshed.total_income - refreshed.total_expenses - refreshed.total_owner_payouts
    )


@pytest.mark.asyncio
async def test_archiving_recomputes_totals(context):
    account = await property_ledger(context)
    await context.store.append_transaction(account.id, income("pay-1", "900.00"))
    await context.store.append_transaction(account.id, income("pay-2", "100.00"))
    live = await context.store.live_transactions(account.id, payment_id="pay-2")

    archived = await context.store.archive_transactions(account.id, [live[0].id], reason="test")

    assert archived == 1
    refreshed = await context.store.get_account(account.id)
    assert refreshed.total_income == Decimal("900.00")
    assert len(await context.store.transactions(account.id, include_archived=True)) == 2


@pytest.mark.asyncio
async def test_transactions_are_append_only(context):
    """Financial fields of a persisted transaction can never be rewritten or deleted."""
    account = await property_ledger(context)
    await context.store.append_transaction(account.id, income("pay-1"))

    with pytest.raises(ImmutableLedgerError):
        async with context.ledger_db.session() as session:
            tx = (await session.execute(select(LedgerTransaction))).scalar_one()
            tx.amount = Decimal("1.00")

    with pytest.raises(ImmutableLedgerError):
        async with context.ledger_db.session() as session:
            tx = (await session.execute(select(LedgerTransaction))).scalar_one()
            await session.delete(tx)

    live = await context.store.live_transactions(account.id)
    assert live[0].amount == Decimal("900.00")


@pytest.mark.asyncio
async def test_payout_requires_balance(context):
    account = await property_ledger(context)
    await context.store.append_transaction(account.id, income("pay-1", "100.00"))

    with pytest.raises(InsufficientBalanceError):
        await context.store.record_owner_payout(account.id, Decimal("100.01"), "PO-1", "Ada Owner")

    payout = await context.store.record_owner_payout(account.id, Decimal("100.00"), "PO-2", "Ada Owner")
    assert payout.status == PayoutStatus.PENDING.value
    assert (await context.store.get_account(account.id)).running_balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_payout_status_is_the_only_mutable_field(context):
    account = await property_ledger(context)
    await context.store.append_transaction(account.id, income("pay-1", "500.00"))
    payout = await context.store.record_owner_payout(account.id, Decimal("200.00"), "PO-1", "Ada Owner")

    updated = await context.store.update_payout_status(payout.id, PayoutStatus.COMPLETED.value)
    assert updated.status == PayoutStatus.COMPLETED.value

    with pytest.raises(ValidationError):
        await context.store.update_payout_status(payout.id, "teleported")


@pytest.mark.asyncio
async def test_archived_ledger_rejects_appends(context):
    account = await property_ledger(context)
    await context.store.archive_account(account.id, reason="property deleted")

    with pytest.raises(ValidationError):
        await context.store.append_transaction(account.id, income("pay-1"))
