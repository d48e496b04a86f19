"""
Ledger poster: turns operational changes into idempotent ledger postings.

Company commission and owner income are appended through the ledger store's
filter-gated append, so posting the same payment any number of times leaves
exactly one live transaction per ledger. After each posting attempt a
best-effort verification re-queues missing postings and deduplicates extras.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

import structlog

from ledgersync.core.clock import utcnow
from ledgersync.core.exceptions import NotFoundError, PaymentNotFoundError, ValidationError
from ledgersync.detection.types import PaymentSnapshot, PropertySnapshot, UserSnapshot
from ledgersync.models.ledger import AccountKind, LedgerAccount, LedgerType, TransactionType
from ledgersync.models.operational import PaymentType
from ledgersync.models.sync_failure import EntityKind
from .deduplicator import Deduplicator
from .ledger_events import LedgerEventQueue
from .ledger_store import AccountKey, AppendResult, LedgerStore, NewTransaction
from .operational_reader import OperationalReader

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


def owner_income_amount(payment: PaymentSnapshot) -> Decimal:
    """Owner's net share with the deposit excluded: ``(amount - deposit) * owner / amount``."""
    if payment.amount <= 0:
        return Decimal("0")
    owner_share = payment.owner_share
    if owner_share is None:
        owner_share = payment.amount - payment.commission
    net = payment.amount - payment.deposit_amount
    if net <= 0 or owner_share <= 0:
        return Decimal("0")
    return (net * owner_share / payment.amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PostingVerification:
    """Outcome of the post-hoc check for one payment."""
    payment_id: str
    skipped: bool = False
    property_postings: int = 0
    company_postings: int = 0
    owner_income_enqueued: bool = False
    commission_reposted: bool = False
    duplicates_archived: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class LedgerPoster:
    """Idempotent posting of payments, properties and users into ledgers."""

    def __init__(
        self,
        store: LedgerStore,
        reader: OperationalReader,
        deduplicator: Deduplicator,
        ledger_events: LedgerEventQueue,
    ):
        self.store = store
        self.reader = reader
        self.deduplicator = deduplicator
        self.ledger_events = ledger_events
        self.logger = logger.bind(service="ledger_poster")

    # Ledger resolution

    async def _owner_name(self, owner_id: Optional[str]) -> Optional[str]:
        if not owner_id:
            return None
        user = await self.reader.get_user(owner_id)
        return user.display_name if user else None

    async def ensure_property_ledger(self, prop: PropertySnapshot, ledger_type: str = LedgerType.RENTAL.value) -> LedgerAccount:
        account, _ = await self.store.ensure_account(
            AccountKey.for_property(prop.id, ledger_type),
            company_id=prop.company_id,
            display_name=prop.name,
            address=prop.address,
            owner_id=prop.owner_id,
            owner_name=await self._owner_name(prop.owner_id),
        )
        return account

    async def ensure_development_ledger(self, development_id: str) -> LedgerAccount:
        development = await self.reader.get_development(development_id)
        if development is None:
            raise NotFoundError(f"Development not found: {development_id}", {"development_id": development_id})
        account, _ = await self.store.ensure_account(
            AccountKey.for_property(development.id, LedgerType.SALE.value, "development"),
            company_id=development.company_id,
            display_name=development.name,
            address=development.address,
            owner_id=development.owner_id,
            owner_name=await self._owner_name(development.owner_id),
        )
        return account

    async def ensure_company_ledger(self, company_id: str) -> LedgerAccount:
        account, _ = await self.store.ensure_account(
            AccountKey.for_company(company_id),
            company_id=company_id,
            display_name=f"Company {company_id}",
        )
        return account

    async def resolve_owner_ledger(self, payment: PaymentSnapshot) -> LedgerAccount:
        """Development ledger for development sales, otherwise the property ledger."""
        development_id = payment.development_id
        if not development_id and payment.development_unit_id:
            unit = await self.reader.get_development_unit(payment.development_unit_id)
            if unit is None:
                raise NotFoundError(
                    f"Development unit not found: {payment.development_unit_id}",
                    {"development_unit_id": payment.development_unit_id}
                )
            development_id = unit.development_id

        if development_id:
            return await self.ensure_development_ledger(development_id)

        if not payment.property_id:
            raise ValidationError("Payment has no property or development", {"payment_id": payment.id})

        prop = await self.reader.get_property(payment.property_id)
        if prop is None:
            raise NotFoundError(f"Property not found: {payment.property_id}", {"property_id": payment.property_id})

        ledger_type = LedgerType.SALE.value if payment.payment_type == PaymentType.SALE.value else LedgerType.RENTAL.value
        return await self.ensure_property_ledger(prop, ledger_type)

    # Payment postings

    async def post_payment_commission(self, payment: PaymentSnapshot) -> Optional[AppendResult]:
        """Append the agency's commission to the company ledger, once per payment."""
        if not payment.is_postable or payment.commission <= 0:
            return None

        account = await self.ensure_company_ledger(payment.company_id)
        is_sale = payment.payment_type == PaymentType.SALE.value
        entry = NewTransaction(
            type=TransactionType.INCOME.value,
            amount=payment.commission,
            date=payment.effective_date,
            description="Sales commission income" if is_sale else "Rental commission income",
            payment_id=payment.id,
            idempotency_key=f"commission:{payment.id}",
            reference_number=payment.reference_number,
            category="commission",
            source="sales_commission" if is_sale else "rental_commission",
        )
        return await self.store.append_transaction(account.id, entry)

    async def post_owner_income(self, payment_id: str) -> Optional[AppendResult]:
        """Append the owner's net income to the owning property/development ledger."""
        payment = await self.reader.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        if not payment.is_postable:
            self.logger.debug("Payment not postable, skipping owner income", payment_id=payment_id, status=payment.status)
            return None

        amount = owner_income_amount(payment)
        if amount <= 0:
            self.logger.debug("No owner income to post", payment_id=payment_id)
            return None

        account = await self.resolve_owner_ledger(payment)
        is_sale = payment.payment_type == PaymentType.SALE.value
        reference = payment.reference_number or payment.id
        entry = NewTransaction(
            type=TransactionType.INCOME.value,
            amount=amount,
            date=payment.effective_date,
            description=f"{'Sale' if is_sale else 'Rental'} income - {reference}",
            payment_id=payment.id,
            idempotency_key=f"owner_income:{payment.id}",
            reference_number=payment.reference_number,
            category="sale_income" if is_sale else "rental_income",
        )
        return await self.store.append_transaction(account.id, entry)

    async def reverse_payment(self, payment_id: str, reason: str) -> List[AppendResult]:
        """Offset every live income posting of ``payment_id`` with an expense."""
        results = []
        for tx in await self.store.postings_for_payment(payment_id):
            if tx.type != TransactionType.INCOME.value:
                continue
            entry = NewTransaction(
                type=TransactionType.EXPENSE.value,
                amount=tx.amount,
                date=utcnow(),
                description=f"Reversal of {tx.description} ({reason})",
                idempotency_key=f"reversal:{payment_id}",
                reference_number=tx.reference_number,
                category="income_reversal",
                source=tx.source,
            )
            results.append(await self.store.append_transaction(tx.account_id, entry))

        if any(r.appended for r in results):
            self.logger.info("Payment postings reversed", payment_id=payment_id, reason=reason)
        return results

    async def verify_payment_postings(self, payment_id: str, raise_errors: bool = False) -> PostingVerification:
        """Re-check a payment's postings: re-queue what is missing, dedupe what is doubled."""
        verification = PostingVerification(payment_id=payment_id)
        try:
            payment = await self.reader.get_payment(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            if not payment.is_postable:
                verification.skipped = True
                return verification

            property_postings = await self.store.postings_for_payment(payment_id, AccountKind.PROPERTY.value)
            verification.property_postings = len(property_postings)
            if not property_postings and owner_income_amount(payment) > 0:
                verification.owner_income_enqueued = await self.ledger_events.enqueue_owner_income(
                    payment_id, reason="owner income missing after posting"
                )

            if payment.commission > 0:
                company_postings = await self.store.postings_for_payment(payment_id, AccountKind.COMPANY.value)
                verification.company_postings = len(company_postings)
                if not company_postings:
                    result = await self.post_payment_commission(payment)
                    verification.commission_reposted = bool(result and result.appended)
                    verification.company_postings = 1 if result else 0

            if verification.property_postings > 1 or verification.company_postings > 1:
                results = await self.deduplicator.deduplicate_payment(payment_id)
                verification.duplicates_archived = sum(r.archived_count for r in results)
        except Exception as e:
            if raise_errors:
                raise
            verification.error = str(e)
            self.logger.warning("Posting verification failed", payment_id=payment_id, error=str(e))
        return verification

    async def sync_payment(self, payment: PaymentSnapshot) -> PostingVerification:
        """Full posting path for one payment snapshot.

        Commission failures propagate; owner-income failures are queued on the
        ledger-event backlog.
        """
        if payment.is_reversed:
            await self.reverse_payment(payment.id, reason="payment reversed")
            return PostingVerification(payment_id=payment.id, skipped=True)
        if not payment.is_postable:
            return PostingVerification(payment_id=payment.id, skipped=True)

        await self.post_payment_commission(payment)
        try:
            await self.post_owner_income(payment.id)
        except Exception as e:
            self.logger.warning("Owner income posting failed, queued for retry", payment_id=payment.id, error=str(e))
            await self.ledger_events.enqueue_owner_income(payment.id, reason=str(e)[:500])

        return await self.verify_payment_postings(payment.id)

    # Metadata

    async def sync_property_metadata(self, prop: PropertySnapshot) -> int:
        """Refresh display fields on the property's ledgers, creating one on first sight."""
        accounts = await self.store.list_accounts(AccountKind.PROPERTY.value, owner_entity_id=prop.id)
        if not accounts:
            if prop.is_active:
                await self.ensure_property_ledger(prop)
                return 1
            return 0

        return await self.store.update_account_fields(
            [a.id for a in accounts],
            display_name=prop.name,
            address=prop.address,
            owner_id=prop.owner_id,
            owner_name=await self._owner_name(prop.owner_id),
            company_id=prop.company_id,
        )

    async def sync_user_metadata(self, user: UserSnapshot) -> int:
        accounts = await self.store.list_accounts(owner_id=user.id)
        return await self.store.update_account_fields([a.id for a in accounts], owner_name=user.display_name)

    async def remove_entity(self, kind: EntityKind, entity_id: str) -> int:
        """Handle deletion of a source entity without deleting ledger history."""
        kind = EntityKind(kind)
        if kind is EntityKind.PROPERTY:
            archived = 0
            for account in await self.store.list_accounts(AccountKind.PROPERTY.value, owner_entity_id=entity_id):
                archived += await self.store.archive_account(account.id, reason="source property deleted")
            return archived
        if kind is EntityKind.USER:
            accounts = await self.store.list_accounts(owner_id=entity_id)
            return await self.store.update_account_fields([a.id for a in accounts], owner_id=None, owner_name=None)
        if kind is EntityKind.PAYMENT:
            results = await self.reverse_payment(entity_id, reason="source payment deleted")
            return sum(1 for r in results if r.appended)
        raise ValueError(f"Unknown entity kind: {kind}")
