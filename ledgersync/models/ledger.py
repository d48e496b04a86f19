"""
Ledger models: property/company ledgers, their transactions and owner payouts.

Ledger history is append-only. Persisted transactions keep their financial
fields forever; the only changes allowed afterwards are soft archival of
duplicates and payout status updates. Both rules are enforced at flush time.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum
import uuid

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index, Text, event, text
)
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.core.clock import utcnow
from ledgersync.core.exceptions import ImmutableLedgerError
from .base import LedgerModel, TimestampMixin, Money


class AccountKind(str, Enum):
    PROPERTY = "property"
    COMPANY = "company"


class LedgerType(str, Enum):
    RENTAL = "rental"
    SALE = "sale"


class OwnerEntityType(str, Enum):
    PROPERTY = "property"
    DEVELOPMENT = "development"
    COMPANY = "company"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    OWNER_PAYOUT = "owner_payout"
    REPAIR = "repair"
    MAINTENANCE = "maintenance"
    OTHER = "other"


EXPENSE_TYPES = (
    TransactionType.EXPENSE.value,
    TransactionType.REPAIR.value,
    TransactionType.MAINTENANCE.value,
    TransactionType.OTHER.value,
)


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return str(uuid.uuid4())


class LedgerAccount(LedgerModel, TimestampMixin):
    """An append-only ledger for one owning entity."""

    __tablename__ = "ledger_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    account_kind: Mapped[str] = mapped_column(
        String(20),
        comment="property or company"
    )

    owner_entity_id: Mapped[str] = mapped_column(
        String(64),
        comment="Property, development or company id owning this ledger"
    )

    owner_entity_type: Mapped[str] = mapped_column(String(20))

    ledger_type: Mapped[Optional[str]] = mapped_column(
        String(20),
        comment="rental or sale for property ledgers, NULL for company ledgers"
    )

    company_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    # Denormalized display fields
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    address: Mapped[Optional[str]] = mapped_column(String(300))
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    owner_name: Mapped[Optional[str]] = mapped_column(String(200))

    # Totals, always derived from live transactions
    total_income: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_expenses: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_owner_payouts: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    running_balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    last_income_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(200))
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index(
            "uq_ledger_accounts_property_active",
            "owner_entity_id", "ledger_type",
            unique=True,
            postgresql_where=text("account_kind = 'property' AND NOT is_archived"),
            sqlite_where=text("account_kind = 'property' AND NOT is_archived"),
        ),
        Index(
            "uq_ledger_accounts_company_active",
            "owner_entity_id",
            unique=True,
            postgresql_where=text("account_kind = 'company' AND NOT is_archived"),
            sqlite_where=text("account_kind = 'company' AND NOT is_archived"),
        ),
        Index("idx_ledger_accounts_kind", "account_kind", "is_archived"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerAccount(kind={self.account_kind}, owner={self.owner_entity_id}, "
            f"type={self.ledger_type}, balance={self.running_balance})>"
        )


class LedgerTransaction(LedgerModel):
    """One posted ledger entry. Never rewritten, only archived."""

    __tablename__ = "ledger_transactions"

    # Insertion order is the tie-breaker for same-date duplicates
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True
    )

    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ledger_accounts.id"),
        index=True
    )

    account_kind: Mapped[str] = mapped_column(String(20))

    type: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(Money)
    date: Mapped[datetime] = mapped_column(DateTime)

    payment_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        index=True,
        comment="Source payment in the operational store"
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128))
    reference_number: Mapped[Optional[str]] = mapped_column(String(64))

    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default="completed")

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(200))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index(
            "uq_ledger_tx_payment_active",
            "account_id", "payment_id",
            unique=True,
            postgresql_where=text(
                "account_kind = 'property' AND payment_id IS NOT NULL AND NOT is_archived"
            ),
            sqlite_where=text(
                "account_kind = 'property' AND payment_id IS NOT NULL AND NOT is_archived"
            ),
        ),
        Index(
            "uq_ledger_tx_idempotency_active",
            "account_id", "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL AND NOT is_archived"),
            sqlite_where=text("idempotency_key IS NOT NULL AND NOT is_archived"),
        ),
        Index("idx_ledger_tx_account_live", "account_id", "is_archived", "date"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction(id={self.id}, type={self.type}, amount={self.amount}, payment={self.payment_id})>"


class OwnerPayout(LedgerModel, TimestampMixin):
    """A payout from a property ledger to its owner."""

    __tablename__ = "owner_payouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("ledger_accounts.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    payment_method: Mapped[str] = mapped_column(String(30), default="bank_transfer")
    reference_number: Mapped[str] = mapped_column(String(64))
    recipient_id: Mapped[Optional[str]] = mapped_column(String(64))
    recipient_name: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(20), default=PayoutStatus.PENDING.value)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("uq_owner_payouts_reference", "account_id", "reference_number", unique=True),
    )


IMMUTABLE_TRANSACTION_FIELDS = (
    "account_id", "account_kind", "type", "amount", "date", "payment_id", "idempotency_key",
)

MUTABLE_PAYOUT_FIELDS = ("status", "updated_at")


@event.listens_for(LedgerTransaction, "before_update")
def _guard_transaction_update(mapper, connection, target: LedgerTransaction) -> None:
    state = sa_inspect(target)
    changed = [name for name in IMMUTABLE_TRANSACTION_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ImmutableLedgerError(
            "Ledger transactions are append-only",
            {"transaction_id": target.id, "fields": changed}
        )


@event.listens_for(LedgerTransaction, "before_delete")
def _guard_transaction_delete(mapper, connection, target: LedgerTransaction) -> None:
    raise ImmutableLedgerError(
        "Ledger transactions cannot be deleted",
        {"transaction_id": target.id}
    )


@event.listens_for(OwnerPayout, "before_update")
def _guard_payout_update(mapper, connection, target: OwnerPayout) -> None:
    state = sa_inspect(target)
    changed = [
        attr.key for attr in state.attrs
        if attr.key not in MUTABLE_PAYOUT_FIELDS and attr.history.has_changes()
    ]
    if changed:
        raise ImmutableLedgerError(
            "Only payout status may change after recording",
            {"payout_id": target.id, "fields": changed}
        )
