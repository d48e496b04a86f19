"""
Operational store models.

The engine only reads these tables. They mirror the subset of the property
management domain needed to post and audit ledger entries.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum

from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import OperationalModel, TimestampMixin, Money


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class PaymentType(str, Enum):
    RENTAL = "rental"
    SALE = "sale"
    DEPOSIT = "deposit"
    OTHER = "other"


POSTABLE_PAYMENT_TYPES = (PaymentType.RENTAL.value, PaymentType.SALE.value)


class Payment(OperationalModel, TimestampMixin):
    """A rent or sale payment received by an agency."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    company_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        comment="Agency that received the payment"
    )

    property_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    development_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    development_unit_id: Mapped[Optional[str]] = mapped_column(String(64))

    payment_type: Mapped[str] = mapped_column(String(20), default=PaymentType.RENTAL.value)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)

    amount: Mapped[Decimal] = mapped_column(Money, comment="Gross amount received")
    deposit_amount: Mapped[Decimal] = mapped_column(
        Money,
        default=Decimal("0"),
        comment="Deposit portion, held back from owner income"
    )
    agency_share: Mapped[Optional[Decimal]] = mapped_column(
        Money,
        comment="Commission retained by the agency"
    )
    owner_share: Mapped[Optional[Decimal]] = mapped_column(
        Money,
        comment="Amount due to the owner before deposit exclusion"
    )

    reference_number: Mapped[Optional[str]] = mapped_column(String(64))
    is_provisional: Mapped[bool] = mapped_column(Boolean, default=False)
    in_suspense: Mapped[bool] = mapped_column(Boolean, default=False)
    reversal_of_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_payments_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, status={self.status}, amount={self.amount})>"


class Property(OperationalModel, TimestampMixin):
    """A managed property."""

    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    address: Mapped[str] = mapped_column(String(300), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, name={self.name})>"


class Development(OperationalModel, TimestampMixin):
    """A development (off-plan project) sold unit by unit."""

    __tablename__ = "developments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200), default="")
    address: Mapped[str] = mapped_column(String(300), default="")


class DevelopmentUnit(OperationalModel, TimestampMixin):
    __tablename__ = "development_units"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    development_id: Mapped[str] = mapped_column(String(64), index=True)
    unit_code: Mapped[str] = mapped_column(String(50), default="")


class User(OperationalModel, TimestampMixin):
    """A user of the operational domain (owners included)."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str] = mapped_column(String(200), default="")

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
