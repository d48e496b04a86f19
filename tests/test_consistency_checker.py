"""
Test consistency checks against the operational store and their repairs.
"""

import pytest

from ledgersync.core.clock import utcnow
from ledgersync.services.consistency_checker import InconsistencyType
from ledgersync.services.ledger_store import AccountKey

from conftest import insert_raw_posting, seed_basic


@pytest.mark.asyncio
async def test_synced_store_is_consistent(context):
    await seed_basic(context)
    await context.sync_service.perform_full_sync()

    report = await context.checker.check(lookback_days=7)

    assert report.is_consistent is True
    assert report.inconsistencies == []
    assert report.to_dict()["lookbackDays"] == 7


@pytest.mark.asyncio
async def test_unsynced_payment_is_reported_and_repaired(context):
    """Missing ledger, owner income and commission are all found and fixed."""
    await seed_basic(context)

    report = await context.checker.check()

    assert report.is_consistent is False
    assert report.by_type(InconsistencyType.MISSING_PROPERTY_ACCOUNT).entity_ids == ["prop-1"]
    assert report.by_type(InconsistencyType.MISSING_PROPERTY_LEDGER_INCOME).entity_ids == ["pay-1"]
    assert report.by_type(InconsistencyType.MISSING_COMPANY_COMMISSION).entity_ids == ["pay-1"]

    summary = await context.checker.repair(report)

    assert summary.failed == {}
    assert summary.fixed == {
        "missing_property_account": 1,
        "missing_property_ledger_income": 1,
        "missing_company_commission": 1,
    }
    assert (await context.checker.check()).is_consistent is True


@pytest.mark.asyncio
async def test_repair_is_limited_to_requested_types(context):
    """An orphaned ledger with a vanished owner: only the requested fix runs."""
    await context.store.ensure_account(
        AccountKey.for_property("prop-gone", "rental"),
        company_id="co-1",
        owner_id="owner-gone",
    )

    report = await context.checker.check()
    assert report.by_type(InconsistencyType.ORPHANED_PROPERTY_ACCOUNT).count == 1
    assert report.by_type(InconsistencyType.ORPHANED_OWNER_REFERENCE).count == 1

    summary = await context.checker.repair(report, types=[InconsistencyType.ORPHANED_PROPERTY_ACCOUNT])

    assert summary.fixed == {"orphaned_property_account": 1}
    archived = await context.store.list_accounts(include_archived=True)
    assert archived[0].is_archived is True
    assert archived[0].owner_id == "owner-gone"
    assert (await context.checker.check()).is_consistent is True


@pytest.mark.asyncio
async def test_duplicate_commission_is_reported_and_archived(context):
    account, _ = await context.store.ensure_account(AccountKey.for_company("co-1"), company_id="co-1")
    now = utcnow()
    await insert_raw_posting(context, account, "pay-1", "100.00", now)
    await insert_raw_posting(context, account, "pay-1", "100.00", now)

    report = await context.checker.check()
    finding = report.by_type(InconsistencyType.DUPLICATE_COMPANY_COMMISSION)
    assert finding.count == 1
    assert finding.entity_ids == [account.id]

    summary = await context.checker.repair(report, types=["duplicate_company_commission"])

    assert summary.fixed == {"duplicate_company_commission": 1}
    assert len(await context.store.live_transactions(account.id)) == 1
    assert (await context.checker.check()).is_consistent is True
