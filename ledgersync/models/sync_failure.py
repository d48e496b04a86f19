"""
Durable record of entities that failed to synchronize.
"""

from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, Boolean, DateTime, Index, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import LedgerModel, TimestampMixin


class EntityKind(str, Enum):
    PAYMENT = "payment"
    PROPERTY = "property"
    USER = "user"


class FailureStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


class SyncFailure(LedgerModel, TimestampMixin):
    """One row per (entity kind, entity id) that has failed to sync."""

    __tablename__ = "sync_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    entity_kind: Mapped[str] = mapped_column(String(20))
    entity_id: Mapped[str] = mapped_column(String(64))

    # Error classification
    error_name: Mapped[str] = mapped_column(String(100), default="Exception")
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[str] = mapped_column(Text, default="")
    error_labels: Mapped[list] = mapped_column(JSON, default=list)
    retriable: Mapped[bool] = mapped_column(Boolean, default=True)

    status: Mapped[str] = mapped_column(String(20), default=FailureStatus.PENDING.value)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error_at: Mapped[datetime] = mapped_column(DateTime)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the reprocessor may retry; NULL when not retriable"
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("uq_sync_failures_entity", "entity_kind", "entity_id", unique=True),
        Index("idx_sync_failures_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncFailure(kind={self.entity_kind}, id={self.entity_id}, status={self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.entity_kind,
            "entityId": self.entity_id,
            "error": {
                "name": self.error_name,
                "code": self.error_code,
                "message": self.error_message,
                "labels": self.error_labels or [],
            },
            "retriable": self.retriable,
            "status": self.status,
            "attemptCount": self.attempt_count,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "nextAttemptAt": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }
