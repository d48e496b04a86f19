"""
Ledger store primitives.

All ledger mutations go through this module:

* ledgers are created lazily and guarded by partial unique indexes
* transactions are appended with one filter-gated ``INSERT .. SELECT ..
  WHERE NOT EXISTS`` under a row lock on the ledger, so a concurrent second
  writer inserts nothing
* totals are recomputed from the live transaction set inside the same
  database transaction as the append or archival
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import exists, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.clock import utcnow
from ledgersync.core.database import Database
from ledgersync.core.exceptions import (
    InsufficientBalanceError,
    LedgerNotFoundError,
    NotFoundError,
    ValidationError,
)
from ledgersync.models.ledger import (
    EXPENSE_TYPES,
    AccountKind,
    LedgerAccount,
    LedgerTransaction,
    OwnerPayout,
    PayoutStatus,
    TransactionType,
)
from .data_access import ResilientDataAccess

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class AccountKey:
    """Identity of a non-archived ledger."""
    account_kind: str
    owner_entity_id: str
    owner_entity_type: str
    ledger_type: Optional[str] = None

    @classmethod
    def for_company(cls, company_id: str) -> "AccountKey":
        return cls(AccountKind.COMPANY.value, company_id, "company", None)

    @classmethod
    def for_property(cls, owner_entity_id: str, ledger_type: str, owner_entity_type: str = "property") -> "AccountKey":
        return cls(AccountKind.PROPERTY.value, owner_entity_id, owner_entity_type, ledger_type)


@dataclass
class NewTransaction:
    """A transaction about to be appended."""
    type: str
    amount: Decimal
    date: datetime
    description: str = ""
    payment_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    reference_number: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    status: str = "completed"

    def __post_init__(self):
        if self.type not in {t.value for t in TransactionType}:
            raise ValidationError(f"Unknown transaction type: {self.type}")
        self.amount = Decimal(str(self.amount))
        if self.amount < 0:
            raise ValidationError("Transaction amount must be non-negative", {"amount": str(self.amount)})


@dataclass
class LedgerTotals:
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    total_owner_payouts: Decimal = ZERO
    last_income_date: Optional[datetime] = None

    @property
    def running_balance(self) -> Decimal:
        return self.total_income - self.total_expenses - self.total_owner_payouts


@dataclass
class AppendResult:
    account_id: str
    appended: bool
    totals: Optional[LedgerTotals] = None
    reason: Optional[str] = None


def compute_totals(transactions: Sequence[Tuple[str, Decimal, datetime]]) -> LedgerTotals:
    """Totals of live ``(type, amount, date)`` rows, in date order."""
    totals = LedgerTotals()
    for tx_type, amount, date in sorted(transactions, key=lambda row: row[2]):
        amount = Decimal(str(amount))
        if tx_type == TransactionType.INCOME.value:
            totals.total_income += amount
            totals.last_income_date = date
        elif tx_type == TransactionType.OWNER_PAYOUT.value:
            totals.total_owner_payouts += amount
        elif tx_type in EXPENSE_TYPES:
            totals.total_expenses += amount
    return totals


class LedgerStore:
    """Ledger creation, gated appends, archival and payouts."""

    def __init__(self, database: Database, data_access: ResilientDataAccess):
        self.database = database
        self.data_access = data_access
        self.logger = logger.bind(service="ledger_store")

    # Accounts

    @staticmethod
    def _active_account_query(key: AccountKey):
        query = select(LedgerAccount).where(
            LedgerAccount.account_kind == key.account_kind,
            LedgerAccount.owner_entity_id == key.owner_entity_id,
            LedgerAccount.is_archived.is_(False),
        )
        if key.ledger_type is None:
            return query.where(LedgerAccount.ledger_type.is_(None))
        return query.where(LedgerAccount.ledger_type == key.ledger_type)

    async def find_account(self, key: AccountKey) -> Optional[LedgerAccount]:
        async with self.database.session() as session:
            result = await session.execute(self._active_account_query(key))
            return result.scalar_one_or_none()

    async def ensure_account(self, key: AccountKey, **fields: Any) -> Tuple[LedgerAccount, bool]:
        """Return the active ledger for ``key``, creating it if absent."""

        async def find_or_create() -> Tuple[LedgerAccount, bool]:
            async with self.database.session() as session:
                result = await session.execute(self._active_account_query(key))
                account = result.scalar_one_or_none()
                if account is not None:
                    return account, False

                account = LedgerAccount(
                    account_kind=key.account_kind,
                    owner_entity_id=key.owner_entity_id,
                    owner_entity_type=key.owner_entity_type,
                    ledger_type=key.ledger_type,
                    total_income=ZERO,
                    total_expenses=ZERO,
                    total_owner_payouts=ZERO,
                    running_balance=ZERO,
                    is_archived=False,
                    last_updated=utcnow(),
                    **fields,
                )
                session.add(account)
                await session.flush()
                return account, True

        try:
            account, created = await self.data_access.execute_with_retry(
                find_or_create, description="ensure_ledger_account"
            )
        except IntegrityError:
            # Another writer created it first
            account = await self.find_account(key)
            if account is None:
                raise
            created = False

        if created:
            self.logger.info(
                "Ledger account created",
                account_id=account.id,
                kind=key.account_kind,
                owner=key.owner_entity_id,
                ledger_type=key.ledger_type
            )
        return account, created

    async def get_account(self, account_id: str) -> LedgerAccount:
        async with self.database.session() as session:
            account = await session.get(LedgerAccount, account_id)
        if account is None:
            raise LedgerNotFoundError(account_id)
        return account

    async def list_accounts(self, account_kind: Optional[str] = None,
                            include_archived: bool = False,
                            owner_entity_id: Optional[str] = None,
                            owner_id: Optional[str] = None,
                            company_id: Optional[str] = None) -> List[LedgerAccount]:
        query = select(LedgerAccount).order_by(LedgerAccount.created_at)
        if account_kind:
            query = query.where(LedgerAccount.account_kind == account_kind)
        if owner_entity_id:
            query = query.where(LedgerAccount.owner_entity_id == owner_entity_id)
        if owner_id:
            query = query.where(LedgerAccount.owner_id == owner_id)
        if company_id:
            query = query.where(LedgerAccount.company_id == company_id)
        if not include_archived:
            query = query.where(LedgerAccount.is_archived.is_(False))
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_account_fields(self, account_ids: Sequence[str], **fields: Any) -> int:
        """Update denormalized display fields. Never touches totals or history."""
        allowed = {"display_name", "address", "owner_id", "owner_name", "company_id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Fields are not display fields: {sorted(unknown)}")
        if not account_ids or not fields:
            return 0

        async def apply() -> int:
            async with self.database.session() as session:
                result = await session.execute(
                    update(LedgerAccount)
                    .where(LedgerAccount.id.in_(list(account_ids)))
                    .values(last_updated=utcnow(), **fields)
                )
                return result.rowcount

        return await self.data_access.execute_with_retry(apply, description="update_ledger_display_fields")

    async def archive_account(self, account_id: str, reason: str) -> bool:
        async def apply() -> int:
            async with self.database.session() as session:
                result = await session.execute(
                    update(LedgerAccount)
                    .where(LedgerAccount.id == account_id, LedgerAccount.is_archived.is_(False))
                    .values(is_archived=True, archived_at=utcnow(), archived_reason=reason, last_updated=utcnow())
                )
                return result.rowcount

        archived = await self.data_access.execute_with_retry(apply, description="archive_ledger_account")
        if archived:
            self.logger.info("Ledger account archived", account_id=account_id, reason=reason)
        return bool(archived)

    # Transactions

    @staticmethod
    async def _lock_account(session: AsyncSession, account_id: str) -> LedgerAccount:
        result = await session.execute(
            select(LedgerAccount).where(LedgerAccount.id == account_id).with_for_update()
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise LedgerNotFoundError(account_id)
        return account

    @staticmethod
    async def _gated_insert(session: AsyncSession, account: LedgerAccount, entry: NewTransaction) -> bool:
        """Insert ``entry`` unless a live transaction already carries its payment id or key."""
        table = LedgerTransaction.__table__
        values: Dict[str, Any] = {
            "account_id": account.id,
            "account_kind": account.account_kind,
            "type": entry.type,
            "amount": entry.amount,
            "date": entry.date,
            "payment_id": entry.payment_id,
            "idempotency_key": entry.idempotency_key,
            "reference_number": entry.reference_number,
            "description": entry.description,
            "category": entry.category,
            "source": entry.source,
            "status": entry.status,
            "is_archived": False,
            "archived_at": None,
            "archived_reason": None,
            "created_at": utcnow(),
        }

        gate = []
        if entry.payment_id:
            gate.append(table.c.payment_id == entry.payment_id)
        if entry.idempotency_key:
            gate.append(table.c.idempotency_key == entry.idempotency_key)

        source = select(*[literal(value, type_=table.c[name].type).label(name) for name, value in values.items()])
        if gate:
            already_posted = (
                select(table.c.id)
                .where(table.c.account_id == account.id, table.c.is_archived.is_(False), or_(*gate))
            )
            source = source.where(~exists(already_posted))

        result = await session.execute(insert(table).from_select(list(values.keys()), source))
        return result.rowcount == 1

    @staticmethod
    async def recompute_totals(session: AsyncSession, account_id: str) -> LedgerTotals:
        """Recompute and persist totals from live transactions."""
        result = await session.execute(
            select(LedgerTransaction.type, LedgerTransaction.amount, LedgerTransaction.date)
            .where(LedgerTransaction.account_id == account_id, LedgerTransaction.is_archived.is_(False))
        )
        totals = compute_totals([tuple(row) for row in result.all()])
        await session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.id == account_id)
            .values(
                total_income=totals.total_income,
                total_expenses=totals.total_expenses,
                total_owner_payouts=totals.total_owner_payouts,
                running_balance=totals.running_balance,
                last_income_date=totals.last_income_date,
                last_updated=utcnow(),
            )
        )
        return totals

    async def append_transaction(self, account_id: str, entry: NewTransaction) -> AppendResult:
        """Append ``entry`` if no live transaction shares its payment id or key."""

        async def append() -> AppendResult:
            async with self.database.session() as session:
                account = await self._lock_account(session, account_id)
                if account.is_archived:
                    raise ValidationError("Cannot post to an archived ledger", {"account_id": account_id})
                if not await self._gated_insert(session, account, entry):
                    return AppendResult(account_id, appended=False, reason="already_posted")
                totals = await self.recompute_totals(session, account_id)
                return AppendResult(account_id, appended=True, totals=totals)

        try:
            result = await self.data_access.execute_with_retry(append, description="append_ledger_transaction")
        except IntegrityError:
            # A concurrent writer committed the same posting first
            self.logger.debug(
                "Duplicate posting rejected by unique index",
                account_id=account_id,
                payment_id=entry.payment_id,
                idempotency_key=entry.idempotency_key
            )
            return AppendResult(account_id, appended=False, reason="duplicate_key")

        if result.appended:
            self.logger.info(
                "Ledger transaction appended",
                account_id=account_id,
                type=entry.type,
                amount=str(entry.amount),
                payment_id=entry.payment_id
            )
        return result

    async def live_transactions(self, account_id: str, payment_id: Optional[str] = None) -> List[LedgerTransaction]:
        query = (
            select(LedgerTransaction)
            .where(LedgerTransaction.account_id == account_id, LedgerTransaction.is_archived.is_(False))
            .order_by(LedgerTransaction.date, LedgerTransaction.id)
        )
        if payment_id is not None:
            query = query.where(LedgerTransaction.payment_id == payment_id)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def transactions(self, account_id: str, include_archived: bool = True) -> List[LedgerTransaction]:
        query = select(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
        if not include_archived:
            query = query.where(LedgerTransaction.is_archived.is_(False))
        async with self.database.session() as session:
            result = await session.execute(query.order_by(LedgerTransaction.id))
            return list(result.scalars().all())

    async def postings_for_payment(self, payment_id: str, account_kind: Optional[str] = None) -> List[LedgerTransaction]:
        """Live transactions referencing ``payment_id`` across ledgers."""
        query = (
            select(LedgerTransaction)
            .where(LedgerTransaction.payment_id == payment_id, LedgerTransaction.is_archived.is_(False))
            .order_by(LedgerTransaction.date, LedgerTransaction.id)
        )
        if account_kind is not None:
            query = query.where(LedgerTransaction.account_kind == account_kind)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def archive_transactions(self, account_id: str, transaction_ids: Sequence[int], reason: str) -> int:
        """Soft-archive transactions and recompute the ledger totals."""
        if not transaction_ids:
            return 0

        async def apply() -> int:
            async with self.database.session() as session:
                await self._lock_account(session, account_id)
                result = await session.execute(
                    update(LedgerTransaction)
                    .where(
                        LedgerTransaction.account_id == account_id,
                        LedgerTransaction.id.in_(list(transaction_ids)),
                        LedgerTransaction.is_archived.is_(False),
                    )
                    .values(is_archived=True, archived_at=utcnow(), archived_reason=reason)
                )
                await self.recompute_totals(session, account_id)
                return result.rowcount

        return await self.data_access.execute_with_retry(apply, description="archive_ledger_transactions")

    async def refresh_totals(self, account_id: str) -> LedgerTotals:
        async def apply() -> LedgerTotals:
            async with self.database.session() as session:
                await self._lock_account(session, account_id)
                return await self.recompute_totals(session, account_id)

        return await self.data_access.execute_with_retry(apply, description="refresh_ledger_totals")

    # Manual entries and payouts

    async def record_expense(
        self,
        account_id: str,
        amount: Decimal,
        description: str,
        category: Optional[str] = None,
        type: str = TransactionType.EXPENSE.value,
        idempotency_key: Optional[str] = None,
        date: Optional[datetime] = None,
    ) -> AppendResult:
        if type not in EXPENSE_TYPES:
            raise ValidationError(f"Not an expense type: {type}")
        if Decimal(str(amount)) <= 0:
            raise ValidationError("Expense amount must be positive")
        entry = NewTransaction(
            type=type,
            amount=amount,
            date=date or utcnow(),
            description=description,
            category=category,
            idempotency_key=idempotency_key,
        )
        return await self.append_transaction(account_id, entry)

    async def record_owner_payout(
        self,
        account_id: str,
        amount: Decimal,
        reference_number: str,
        recipient_name: str,
        payment_method: str = "bank_transfer",
        recipient_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OwnerPayout:
        """Record a payout and its ``owner_payout`` transaction atomically."""
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Payout amount must be positive")
        if not reference_number:
            raise ValidationError("Payout reference number is required")

        async def apply() -> OwnerPayout:
            async with self.database.session() as session:
                account = await self._lock_account(session, account_id)
                if account.account_kind != AccountKind.PROPERTY.value:
                    raise ValidationError("Payouts are only recorded on property ledgers")
                if account.is_archived:
                    raise ValidationError("Cannot pay out from an archived ledger")

                current = await self.recompute_totals(session, account_id)
                if amount > current.running_balance:
                    raise InsufficientBalanceError(amount, current.running_balance)

                now = utcnow()
                payout = OwnerPayout(
                    account_id=account_id,
                    amount=amount,
                    date=now,
                    payment_method=payment_method,
                    reference_number=reference_number,
                    recipient_id=recipient_id,
                    recipient_name=recipient_name,
                    status=PayoutStatus.PENDING.value,
                    notes=notes,
                )
                session.add(payout)
                await session.flush()

                entry = NewTransaction(
                    type=TransactionType.OWNER_PAYOUT.value,
                    amount=amount,
                    date=now,
                    description=f"Owner payout - {reference_number}",
                    idempotency_key=f"payout:{reference_number}",
                    reference_number=reference_number,
                    category="owner_payout",
                )
                if not await self._gated_insert(session, account, entry):
                    raise ValidationError("Payout already recorded", {"reference_number": reference_number})
                await self.recompute_totals(session, account_id)
                return payout

        payout = await self.data_access.execute_with_retry(apply, description="record_owner_payout")
        self.logger.info(
            "Owner payout recorded",
            account_id=account_id,
            payout_id=payout.id,
            amount=str(amount),
            reference=reference_number
        )
        return payout

    async def update_payout_status(self, payout_id: str, status: str) -> OwnerPayout:
        if status not in {s.value for s in PayoutStatus}:
            raise ValidationError(f"Unknown payout status: {status}")

        async def apply() -> OwnerPayout:
            async with self.database.session() as session:
                payout = await session.get(OwnerPayout, payout_id)
                if payout is None:
                    raise NotFoundError(f"Payout not found: {payout_id}", {"payout_id": payout_id})
                payout.status = status
                await session.flush()
                return payout

        return await self.data_access.execute_with_retry(apply, description="update_payout_status")

    async def payouts(self, account_id: str) -> List[OwnerPayout]:
        async with self.database.session() as session:
            result = await session.execute(
                select(OwnerPayout).where(OwnerPayout.account_id == account_id).order_by(OwnerPayout.date)
            )
            return list(result.scalars().all())
