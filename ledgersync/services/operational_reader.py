"""
Read-only access to the operational store.
"""

from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence, Set, Tuple, Type

import structlog
from sqlalchemy import and_, or_, select

from ledgersync.core.database import Database
from ledgersync.detection.types import PaymentSnapshot, PropertySnapshot, UserSnapshot
from ledgersync.models.operational import (
    POSTABLE_PAYMENT_TYPES,
    Development,
    DevelopmentUnit,
    Payment,
    PaymentStatus,
    Property,
    User,
)
from .data_access import ResilientDataAccess

logger = structlog.get_logger(__name__)


class OperationalReader:
    """Snapshot loaders and batched scans over the operational store."""

    def __init__(self, database: Database, data_access: ResilientDataAccess):
        self.database = database
        self.data_access = data_access

    async def _get(self, model: Type, entity_id: str):
        async def load():
            async with self.database.session() as session:
                return await session.get(model, entity_id)

        return await self.data_access.execute_with_retry(load, description=f"load_{model.__tablename__}")

    async def get_payment(self, payment_id: str) -> Optional[PaymentSnapshot]:
        row = await self._get(Payment, payment_id)
        return PaymentSnapshot.from_model(row) if row else None

    async def get_property(self, property_id: str) -> Optional[PropertySnapshot]:
        row = await self._get(Property, property_id)
        return PropertySnapshot.from_model(row) if row else None

    async def get_user(self, user_id: str) -> Optional[UserSnapshot]:
        row = await self._get(User, user_id)
        return UserSnapshot.from_model(row) if row else None

    async def get_development(self, development_id: str) -> Optional[Development]:
        return await self._get(Development, development_id)

    async def get_development_unit(self, unit_id: str) -> Optional[DevelopmentUnit]:
        return await self._get(DevelopmentUnit, unit_id)

    async def existing_ids(self, model: Type, ids: Sequence[str]) -> Set[str]:
        """Subset of ``ids`` present in ``model``'s table."""
        if not ids:
            return set()

        async def load() -> Set[str]:
            found: Set[str] = set()
            unique = list(set(ids))
            async with self.database.session() as session:
                for start in range(0, len(unique), 500):
                    chunk = unique[start:start + 500]
                    result = await session.execute(select(model.id).where(model.id.in_(chunk)))
                    found.update(row[0] for row in result.all())
            return found

        return await self.data_access.execute_with_retry(load, description=f"existing_{model.__tablename__}")

    async def list_properties(self, company_id: Optional[str] = None,
                              active_only: bool = False) -> List[PropertySnapshot]:
        query = select(Property).order_by(Property.id)
        if company_id:
            query = query.where(Property.company_id == company_id)
        if active_only:
            query = query.where(Property.is_active.is_(True))
        async with self.database.session() as session:
            result = await session.execute(query)
            return [PropertySnapshot.from_model(row) for row in result.scalars().all()]

    async def list_developments(self, company_id: Optional[str] = None) -> List[Development]:
        query = select(Development).order_by(Development.id)
        if company_id:
            query = query.where(Development.company_id == company_id)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_users(self) -> List[UserSnapshot]:
        async with self.database.session() as session:
            result = await session.execute(select(User).order_by(User.id))
            return [UserSnapshot.from_model(row) for row in result.scalars().all()]

    async def iter_postable_payments(
        self,
        since: Optional[datetime] = None,
        company_id: Optional[str] = None,
        development_only: bool = False,
        batch_size: int = 200,
    ) -> AsyncIterator[List[PaymentSnapshot]]:
        """Yield batches of completed rental/sale payments ordered by id."""
        last_id: Optional[str] = None
        while True:
            query = (
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.COMPLETED.value,
                    Payment.payment_type.in_(POSTABLE_PAYMENT_TYPES),
                )
                .order_by(Payment.id)
                .limit(batch_size)
            )
            if since is not None:
                query = query.where(Payment.updated_at >= since)
            if company_id:
                query = query.where(Payment.company_id == company_id)
            if development_only:
                query = query.where(
                    (Payment.development_id.is_not(None)) | (Payment.development_unit_id.is_not(None))
                )
            if last_id is not None:
                query = query.where(Payment.id > last_id)

            async with self.database.session() as session:
                result = await session.execute(query)
                batch = [PaymentSnapshot.from_model(row) for row in result.scalars().all()]

            if not batch:
                return
            yield [p for p in batch if p.is_postable]
            last_id = batch[-1].id
            if len(batch) < batch_size:
                return

    async def changed_since(self, model: Type, since: datetime, limit: int = 100,
                            after: Optional[datetime] = None,
                            cursor: Optional[Tuple[datetime, str]] = None) -> list:
        """Rows of ``model`` with ``updated_at`` in the window, ordered by ``(updated_at, id)``.

        ``cursor`` is the ``(updated_at, id)`` of the last row already read;
        only rows strictly after it are returned.
        """
        query = select(model).where(model.updated_at >= since).order_by(model.updated_at, model.id).limit(limit)
        if after is not None:
            query = query.where(model.updated_at <= after)
        if cursor is not None:
            last_updated, last_id = cursor
            query = query.where(or_(
                model.updated_at > last_updated,
                and_(model.updated_at == last_updated, model.id > last_id),
            ))

        async def load() -> list:
            async with self.database.session() as session:
                result = await session.execute(query)
                return list(result.scalars().all())

        return await self.data_access.execute_with_retry(load, description=f"poll_{model.__tablename__}")
