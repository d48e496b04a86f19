"""
Backlog of ledger postings that could not be applied on the live path.
"""

from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, DateTime, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import LedgerModel, TimestampMixin


class LedgerEventType(str, Enum):
    OWNER_INCOME = "owner_income"


class LedgerEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_EVENT_STATUSES = (
    LedgerEventStatus.PENDING.value,
    LedgerEventStatus.PROCESSING.value,
    LedgerEventStatus.FAILED.value,
)


class LedgerEvent(LedgerModel, TimestampMixin):
    """A queued ledger posting, drained by the sync service."""

    __tablename__ = "ledger_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(30))
    payment_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), default=LedgerEventStatus.PENDING.value)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index(
            "uq_ledger_events_open",
            "event_type", "payment_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing', 'failed')"),
            sqlite_where=text("status IN ('pending', 'processing', 'failed')"),
        ),
        Index("idx_ledger_events_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEvent(type={self.event_type}, payment={self.payment_id}, status={self.status})>"
