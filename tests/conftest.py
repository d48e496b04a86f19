"""
Shared fixtures: file-backed SQLite stores in a temp directory and a fully
wired AppContext with every background loop disabled.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from ledgersync.core.clock import utcnow
from ledgersync.core.config import Settings
from ledgersync.core.context import AppContext
from ledgersync.models.base import OperationalModel
from ledgersync.models.ledger import LedgerTransaction, TransactionType
from ledgersync.models.operational import (
    Development,
    DevelopmentUnit,
    Payment,
    PaymentStatus,
    PaymentType,
    Property,
    User,
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        operational_database_url=f"sqlite:///{tmp_path / 'operational.db'}",
        ledger_database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        auto_create_tables=True,
        log_level="WARNING",
        log_format="console",
        retry_max_attempts=3,
        retry_base_delay=0.001,
        realtime_sync_enabled=False,
        scheduler_enabled=False,
        maintenance_queue_enabled=False,
        consistency_quick_timeout=0.2,
    )


@pytest.fixture
async def context(settings):
    ctx = AppContext(settings)
    await ctx.operational_db.create_all(OperationalModel.metadata)
    await ctx.init_schema()
    yield ctx
    await ctx.stop()


async def seed(ctx: AppContext, *rows) -> None:
    """Insert operational rows."""
    async with ctx.operational_db.session() as session:
        session.add_all(rows)


def make_user(user_id: str = "owner-1", first_name: str = "Ada", last_name: str = "Owner") -> User:
    return User(id=user_id, company_id="co-1", first_name=first_name, last_name=last_name, email=f"{user_id}@example.com")


def make_property(property_id: str = "prop-1", owner_id: Optional[str] = "owner-1",
                  company_id: str = "co-1", name: str = "12 High Street", is_active: bool = True,
                  **fields) -> Property:
    return Property(
        id=property_id,
        company_id=company_id,
        owner_id=owner_id,
        name=name,
        address=f"{name}, Springfield",
        is_active=is_active,
        **fields,
    )


def make_development(development_id: str = "dev-1", company_id: str = "co-1",
                     owner_id: Optional[str] = "owner-1") -> Development:
    return Development(id=development_id, company_id=company_id, owner_id=owner_id,
                       name="Riverside Phase 1", address="Riverside")


def make_unit(unit_id: str = "unit-1", development_id: str = "dev-1") -> DevelopmentUnit:
    return DevelopmentUnit(id=unit_id, development_id=development_id, unit_code="A-101")


def make_payment(
    payment_id: str = "pay-1",
    property_id: Optional[str] = "prop-1",
    amount: str = "1000.00",
    agency_share: Optional[str] = "100.00",
    owner_share: Optional[str] = "900.00",
    deposit_amount: str = "0",
    status: str = PaymentStatus.COMPLETED.value,
    payment_type: str = PaymentType.RENTAL.value,
    company_id: str = "co-1",
    payment_date: Optional[datetime] = None,
    **fields,
) -> Payment:
    return Payment(
        id=payment_id,
        company_id=company_id,
        property_id=property_id,
        payment_type=payment_type,
        status=status,
        amount=Decimal(amount),
        deposit_amount=Decimal(deposit_amount),
        agency_share=Decimal(agency_share) if agency_share is not None else None,
        owner_share=Decimal(owner_share) if owner_share is not None else None,
        reference_number=f"REF-{payment_id}",
        payment_date=payment_date or utcnow(),
        **fields,
    )


async def seed_basic(ctx: AppContext) -> None:
    """One owner, one property, one completed 1000/100/900 rental payment."""
    await seed(ctx, make_user(), make_property(), make_payment())


async def insert_raw_posting(ctx: AppContext, account, payment_id: str, amount: str, date: datetime) -> None:
    """Write an income posting directly, bypassing the gated append."""
    async with ctx.ledger_db.session() as session:
        session.add(LedgerTransaction(
            account_id=account.id,
            account_kind=account.account_kind,
            type=TransactionType.INCOME.value,
            amount=Decimal(amount),
            date=date,
            payment_id=payment_id,
            description="Rental commission income",
            is_archived=False,
        ))
