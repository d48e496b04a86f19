"""
Cross-store consistency checks and repairs.

``check`` is read-only and reports findings; ``repair`` applies fixes for a
chosen set of finding types. Archival is the only way a ledger is retired;
nothing here deletes ledger history.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ledgersync.core.clock import utcnow
from ledgersync.models.ledger import AccountKind, OwnerEntityType
from ledgersync.models.operational import Development, DevelopmentUnit, Property, User
from .deduplicator import Deduplicator
from .ledger_poster import LedgerPoster, owner_income_amount
from .ledger_store import LedgerStore
from .operational_reader import OperationalReader

logger = structlog.get_logger(__name__)

SAMPLE_SIZE = 20


class InconsistencyType(str, Enum):
    ORPHANED_PROPERTY_ACCOUNT = "orphaned_property_account"
    ORPHANED_OWNER_REFERENCE = "orphaned_owner_reference"
    MISSING_PROPERTY_ACCOUNT = "missing_property_account"
    MISSING_PROPERTY_LEDGER_INCOME = "missing_property_ledger_income"
    MISSING_COMPANY_COMMISSION = "missing_company_commission"
    DUPLICATE_PROPERTY_LEDGER_POSTING = "duplicate_property_ledger_posting"
    DUPLICATE_COMPANY_COMMISSION = "duplicate_company_commission"
    ACCOUNT_CHECK_ERROR = "account_check_error"
    DATABASE_ERROR = "database_error"


# Fixes the weekly audit may apply unattended
AUTO_FIX_SAFE_TYPES = frozenset({
    InconsistencyType.ORPHANED_PROPERTY_ACCOUNT,
    InconsistencyType.MISSING_PROPERTY_ACCOUNT,
    InconsistencyType.ORPHANED_OWNER_REFERENCE,
})


@dataclass
class Inconsistency:
    type: InconsistencyType
    description: str
    count: int
    entity_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "description": self.description,
            "count": self.count,
            "sampleIds": self.entity_ids[:SAMPLE_SIZE],
        }


@dataclass
class ConsistencyReport:
    is_consistent: bool
    inconsistencies: List[Inconsistency]
    lookback_days: int
    checked_at: datetime = field(default_factory=utcnow)
    duration_seconds: float = 0.0

    def by_type(self, kind: InconsistencyType) -> Optional[Inconsistency]:
        for item in self.inconsistencies:
            if item.type == kind:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            "isConsistent": self.is_consistent,
            "inconsistencies": [i.to_dict() for i in self.inconsistencies],
            "lookbackDays": self.lookback_days,
            "checkedAt": self.checked_at.isoformat(),
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class RepairSummary:
    fixed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def _bump(self, bucket: Dict[str, int], kind: InconsistencyType) -> None:
        bucket[kind.value] = bucket.get(kind.value, 0) + 1

    def to_dict(self) -> dict:
        return {"fixed": self.fixed, "failed": self.failed, "errors": self.errors[:SAMPLE_SIZE]}


class ConsistencyChecker:
    """Audits ledgers against the operational store."""

    def __init__(
        self,
        store: LedgerStore,
        reader: OperationalReader,
        poster: LedgerPoster,
        deduplicator: Deduplicator,
    ):
        self.store = store
        self.reader = reader
        self.poster = poster
        self.deduplicator = deduplicator
        self.logger = logger.bind(service="consistency_checker")

    async def check(self, lookback_days: int = 30, concurrency: int = 8) -> ConsistencyReport:
        """Run every check and return the findings."""
        lookback_days = max(1, min(int(lookback_days), 365))
        concurrency = max(1, min(int(concurrency), 50))
        since = utcnow() - timedelta(days=lookback_days)
        started = time.monotonic()

        findings: List[Inconsistency] = []
        for step in (
            self._check_orphaned_ledgers,
            self._check_missing_ledgers,
            self._check_owner_references,
        ):
            findings.extend(await self._guarded(step))
        findings.extend(await self._guarded(lambda: self._check_payment_postings(since, concurrency)))
        findings.extend(await self._guarded(lambda: self._check_duplicates(since)))

        report = ConsistencyReport(
            is_consistent=not findings,
            inconsistencies=findings,
            lookback_days=lookback_days,
            duration_seconds=time.monotonic() - started,
        )
        self.logger.info(
            "Consistency check finished",
            is_consistent=report.is_consistent,
            findings={i.type.value: i.count for i in findings},
            duration=round(report.duration_seconds, 3)
        )
        return report

    async def _guarded(self, step) -> List[Inconsistency]:
        try:
            return await step()
        except Exception as e:
            self.logger.error("Consistency check step failed", error=str(e))
            return [Inconsistency(InconsistencyType.DATABASE_ERROR, f"Check failed: {e}", 1)]

    async def _check_orphaned_ledgers(self) -> List[Inconsistency]:
        accounts = await self.store.list_accounts(AccountKind.PROPERTY.value)
        if not accounts:
            return []

        owner_ids = [a.owner_entity_id for a in accounts]
        existing: Set[str] = set()
        existing |= await self.reader.existing_ids(Property, owner_ids)
        existing |= await self.reader.existing_ids(Development, owner_ids)
        existing |= await self.reader.existing_ids(DevelopmentUnit, owner_ids)

        orphaned = [a.id for a in accounts if a.owner_entity_id not in existing]
        if not orphaned:
            return []
        return [Inconsistency(
            InconsistencyType.ORPHANED_PROPERTY_ACCOUNT,
            f"{len(orphaned)} ledger(s) belong to properties or developments that no longer exist",
            len(orphaned),
            orphaned,
        )]

    async def _check_missing_ledgers(self) -> List[Inconsistency]:
        properties = await self.reader.list_properties(active_only=True)
        if not properties:
            return []
        accounts = await self.store.list_accounts(AccountKind.PROPERTY.value)
        covered = {a.owner_entity_id for a in accounts if a.owner_entity_type == OwnerEntityType.PROPERTY.value}

        missing = [p.id for p in properties if p.id not in covered]
        if not missing:
            return []
        return [Inconsistency(
            InconsistencyType.MISSING_PROPERTY_ACCOUNT,
            f"{len(missing)} active propert(ies) have no ledger",
            len(missing),
            missing,
        )]

    async def _check_owner_references(self) -> List[Inconsistency]:
        accounts = [a for a in await self.store.list_accounts() if a.owner_id]
        if not accounts:
            return []
        existing = await self.reader.existing_ids(User, [a.owner_id for a in accounts])

        orphaned = [a.id for a in accounts if a.owner_id not in existing]
        if not orphaned:
            return []
        return [Inconsistency(
            InconsistencyType.ORPHANED_OWNER_REFERENCE,
            f"{len(orphaned)} ledger(s) reference owners that no longer exist",
            len(orphaned),
            orphaned,
        )]

    async def _check_payment_postings(self, since: datetime, concurrency: int) -> List[Inconsistency]:
        semaphore = asyncio.Semaphore(concurrency)
        missing_income: List[str] = []
        missing_commission: List[str] = []
        errors: List[str] = []

        async def check_one(payment) -> None:
            async with semaphore:
                try:
                    if owner_income_amount(payment) > 0:
                        if not await self.store.postings_for_payment(payment.id, AccountKind.PROPERTY.value):
                            missing_income.append(payment.id)
                    if payment.commission > 0:
                        if not await self.store.postings_for_payment(payment.id, AccountKind.COMPANY.value):
                            missing_commission.append(payment.id)
                except Exception as e:
                    self.logger.warning("Payment posting check failed", payment_id=payment.id, error=str(e))
                    errors.append(payment.id)

        async for batch in self.reader.iter_postable_payments(since=since):
            await asyncio.gather(*(check_one(p) for p in batch))

        findings = []
        if missing_income:
            findings.append(Inconsistency(
                InconsistencyType.MISSING_PROPERTY_LEDGER_INCOME,
                f"{len(missing_income)} completed payment(s) are not posted to an owner ledger",
                len(missing_income),
                sorted(missing_income),
            ))
        if missing_commission:
            findings.append(Inconsistency(
                InconsistencyType.MISSING_COMPANY_COMMISSION,
                f"{len(missing_commission)} completed payment(s) are missing their company commission",
                len(missing_commission),
                sorted(missing_commission),
            ))
        if errors:
            findings.append(Inconsistency(
                InconsistencyType.ACCOUNT_CHECK_ERROR,
                f"{len(errors)} payment(s) could not be checked",
                len(errors),
                sorted(errors),
            ))
        return findings

    async def _check_duplicates(self, since: datetime) -> List[Inconsistency]:
        findings = []
        for kind, finding_type, label in (
            (AccountKind.PROPERTY.value, InconsistencyType.DUPLICATE_PROPERTY_LEDGER_POSTING, "property"),
            (AccountKind.COMPANY.value, InconsistencyType.DUPLICATE_COMPANY_COMMISSION, "company"),
        ):
            duplicates = await self.deduplicator.find_ledgers_with_duplicates(kind, updated_since=since)
            if duplicates:
                payment_count = sum(len(ids) for ids in duplicates.values())
                findings.append(Inconsistency(
                    finding_type,
                    f"{payment_count} payment(s) posted more than once across {len(duplicates)} {label} ledger(s)",
                    payment_count,
                    sorted(duplicates),
                ))
        return findings

    async def repair(
        self,
        report: ConsistencyReport,
        types: Optional[Iterable[InconsistencyType]] = None,
    ) -> RepairSummary:
        """Apply fixes for the findings of ``report`` (restricted to ``types`` if given)."""
        allowed = {InconsistencyType(t) for t in types} if types is not None else None
        summary = RepairSummary()

        for finding in report.inconsistencies:
            if allowed is not None and finding.type not in allowed:
                continue
            fixer = self._fixers().get(finding.type)
            if fixer is None:
                continue
            for entity_id in finding.entity_ids:
                try:
                    await fixer(entity_id)
                    summary._bump(summary.fixed, finding.type)
                except Exception as e:
                    summary._bump(summary.failed, finding.type)
                    summary.errors.append(f"{finding.type.value}:{entity_id}: {e}")
                    self.logger.warning(
                        "Consistency repair failed",
                        type=finding.type.value,
                        entity_id=entity_id,
                        error=str(e)
                    )

        if summary.fixed or summary.failed:
            self.logger.info("Consistency repair finished", fixed=summary.fixed, failed=summary.failed)
        return summary

    def _fixers(self):
        return {
            InconsistencyType.ORPHANED_PROPERTY_ACCOUNT: self._archive_orphan,
            InconsistencyType.MISSING_PROPERTY_ACCOUNT: self._create_missing_ledger,
            InconsistencyType.ORPHANED_OWNER_REFERENCE: self._unset_owner,
            InconsistencyType.MISSING_PROPERTY_LEDGER_INCOME: self.poster.post_owner_income,
            InconsistencyType.MISSING_COMPANY_COMMISSION: self._repost_commission,
            InconsistencyType.DUPLICATE_PROPERTY_LEDGER_POSTING: self.deduplicator.deduplicate,
            InconsistencyType.DUPLICATE_COMPANY_COMMISSION: self.deduplicator.deduplicate,
        }

    async def _archive_orphan(self, account_id: str) -> None:
        await self.store.archive_account(account_id, reason="owning entity no longer exists")

    async def _create_missing_ledger(self, property_id: str) -> None:
        prop = await self.reader.get_property(property_id)
        if prop is None:
            return
        await self.poster.ensure_property_ledger(prop)

    async def _unset_owner(self, account_id: str) -> None:
        await self.store.update_account_fields([account_id], owner_id=None, owner_name=None)

    async def _repost_commission(self, payment_id: str) -> None:
        payment = await self.reader.get_payment(payment_id)
        if payment is None:
            return
        await self.poster.post_payment_commission(payment)
