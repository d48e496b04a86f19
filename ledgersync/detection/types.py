"""
Change events produced by the detectors.

Events form a closed union: ``Inserted``, ``Updated`` and ``Deleted``, each
carrying the entity kind and id. Insert/update events carry an immutable
snapshot of the row as it was read.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from ledgersync.models.operational import (
    POSTABLE_PAYMENT_TYPES,
    Payment,
    PaymentStatus,
    Property,
    User,
)
from ledgersync.models.sync_failure import EntityKind


@dataclass(frozen=True)
class PaymentSnapshot:
    id: str
    company_id: str
    property_id: Optional[str]
    development_id: Optional[str]
    development_unit_id: Optional[str]
    payment_type: str
    status: str
    amount: Decimal
    deposit_amount: Decimal
    agency_share: Optional[Decimal]
    owner_share: Optional[Decimal]
    reference_number: Optional[str]
    is_provisional: bool
    in_suspense: bool
    reversal_of_payment_id: Optional[str]
    payment_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            id=payment.id,
            company_id=payment.company_id,
            property_id=payment.property_id,
            development_id=payment.development_id,
            development_unit_id=payment.development_unit_id,
            payment_type=payment.payment_type,
            status=payment.status,
            amount=Decimal(str(payment.amount)),
            deposit_amount=Decimal(str(payment.deposit_amount or 0)),
            agency_share=Decimal(str(payment.agency_share)) if payment.agency_share is not None else None,
            owner_share=Decimal(str(payment.owner_share)) if payment.owner_share is not None else None,
            reference_number=payment.reference_number,
            is_provisional=bool(payment.is_provisional),
            in_suspense=bool(payment.in_suspense),
            reversal_of_payment_id=payment.reversal_of_payment_id,
            payment_date=payment.payment_date,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )

    @property
    def is_postable(self) -> bool:
        """Completed rental/sale payment that is neither provisional nor a reversal."""
        return (
            self.status == PaymentStatus.COMPLETED.value
            and self.payment_type in POSTABLE_PAYMENT_TYPES
            and not self.is_provisional
            and not self.in_suspense
            and not self.reversal_of_payment_id
            and self.amount >= 0
        )

    @property
    def is_reversed(self) -> bool:
        return self.status == PaymentStatus.REVERSED.value

    @property
    def commission(self) -> Decimal:
        return self.agency_share or Decimal("0")

    @property
    def effective_date(self) -> datetime:
        return self.payment_date or self.created_at


@dataclass(frozen=True)
class PropertySnapshot:
    id: str
    company_id: str
    owner_id: Optional[str]
    name: str
    address: str
    is_active: bool
    updated_at: datetime

    @classmethod
    def from_model(cls, prop: Property) -> "PropertySnapshot":
        return cls(
            id=prop.id,
            company_id=prop.company_id,
            owner_id=prop.owner_id,
            name=prop.name or "",
            address=prop.address or "",
            is_active=bool(prop.is_active),
            updated_at=prop.updated_at,
        )


@dataclass(frozen=True)
class UserSnapshot:
    id: str
    display_name: str
    email: str
    updated_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserSnapshot":
        return cls(
            id=user.id,
            display_name=user.display_name,
            email=user.email or "",
            updated_at=user.updated_at,
        )


Snapshot = Union[PaymentSnapshot, PropertySnapshot, UserSnapshot]


@dataclass(frozen=True)
class Inserted:
    kind: EntityKind
    entity_id: str
    snapshot: Snapshot


@dataclass(frozen=True)
class Updated:
    kind: EntityKind
    entity_id: str
    snapshot: Snapshot


@dataclass(frozen=True)
class Deleted:
    kind: EntityKind
    entity_id: str


ChangeEvent = Union[Inserted, Updated, Deleted]


def snapshot_from_model(kind: EntityKind, row) -> Snapshot:
    if kind is EntityKind.PAYMENT:
        return PaymentSnapshot.from_model(row)
    if kind is EntityKind.PROPERTY:
        return PropertySnapshot.from_model(row)
    if kind is EntityKind.USER:
        return UserSnapshot.from_model(row)
    raise ValueError(f"Unknown entity kind: {kind}")
