"""
Duplicate posting cleanup.

For every payment id posted more than once to the same ledger, the earliest
transaction (by date, then insertion order) survives and the rest are
soft-archived. Totals are recomputed from what remains.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func, select

from ledgersync.core.database import Database
from ledgersync.models.ledger import LedgerAccount, LedgerTransaction
from .ledger_store import LedgerStore

logger = structlog.get_logger(__name__)


@dataclass
class DedupResult:
    account_id: str
    archived_count: int = 0
    payment_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "archivedCount": self.archived_count,
            "paymentIds": self.payment_ids,
        }


class Deduplicator:
    """Archives duplicate payment postings, keeping the earliest."""

    def __init__(self, database: Database, store: LedgerStore):
        self.database = database
        self.store = store
        self.logger = logger.bind(service="deduplicator")

    async def duplicate_payment_ids(self, account_id: str) -> List[str]:
        async with self.database.session() as session:
            result = await session.execute(
                select(LedgerTransaction.payment_id)
                .where(
                    LedgerTransaction.account_id == account_id,
                    LedgerTransaction.is_archived.is_(False),
                    LedgerTransaction.payment_id.is_not(None),
                )
                .group_by(LedgerTransaction.payment_id)
                .having(func.count(LedgerTransaction.id) > 1)
            )
            return [row[0] for row in result.all()]

    async def find_ledgers_with_duplicates(
        self,
        account_kind: Optional[str] = None,
        updated_since: Optional[datetime] = None,
    ) -> Dict[str, List[str]]:
        """Map of account id to duplicated payment ids."""
        query = (
            select(LedgerTransaction.account_id, LedgerTransaction.payment_id)
            .join(LedgerAccount, LedgerAccount.id == LedgerTransaction.account_id)
            .where(
                LedgerTransaction.is_archived.is_(False),
                LedgerTransaction.payment_id.is_not(None),
                LedgerAccount.is_archived.is_(False),
            )
            .group_by(LedgerTransaction.account_id, LedgerTransaction.payment_id)
            .having(func.count(LedgerTransaction.id) > 1)
        )
        if account_kind is not None:
            query = query.where(LedgerAccount.account_kind == account_kind)
        if updated_since is not None:
            query = query.where(LedgerAccount.last_updated >= updated_since)

        duplicates: Dict[str, List[str]] = {}
        async with self.database.session() as session:
            result = await session.execute(query)
            for account_id, payment_id in result.all():
                duplicates.setdefault(account_id, []).append(payment_id)
        return duplicates

    async def deduplicate(self, account_id: str, payment_ids: Optional[List[str]] = None) -> DedupResult:
        """Archive duplicates in one ledger."""
        result = DedupResult(account_id=account_id)
        if payment_ids is None:
            payment_ids = await self.duplicate_payment_ids(account_id)

        for payment_id in payment_ids:
            postings = await self.store.live_transactions(account_id, payment_id=payment_id)
            if len(postings) < 2:
                continue

            # live_transactions is ordered by (date, id)
            keeper, extras = postings[0], postings[1:]
            archived = await self.store.archive_transactions(
                account_id,
                [tx.id for tx in extras],
                reason=f"duplicate of transaction {keeper.id}",
            )
            result.archived_count += archived
            result.payment_ids.append(payment_id)

        if result.archived_count:
            self.logger.warning(
                "Duplicate postings archived",
                account_id=account_id,
                archived=result.archived_count,
                payment_ids=result.payment_ids
            )
        return result

    async def deduplicate_payment(self, payment_id: str) -> List[DedupResult]:
        """Deduplicate ``payment_id`` in every ledger that holds it twice or more."""
        postings = await self.store.postings_for_payment(payment_id)
        counts: Dict[str, int] = {}
        for tx in postings:
            counts[tx.account_id] = counts.get(tx.account_id, 0) + 1

        results = []
        for account_id, count in counts.items():
            if count > 1:
                results.append(await self.deduplicate(account_id, [payment_id]))
        return results

    async def deduplicate_all(
        self,
        account_kind: Optional[str] = None,
        updated_since: Optional[datetime] = None,
    ) -> List[DedupResult]:
        duplicates = await self.find_ledgers_with_duplicates(account_kind, updated_since)
        return [await self.deduplicate(account_id, payment_ids) for account_id, payment_ids in duplicates.items()]
