"""
Lease-based maintenance jobs shared by every worker process.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from sqlalchemy import String, Integer, DateTime, Index, Text, JSON, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import LedgerModel, TimestampMixin


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MaintenanceJob(LedgerModel, TimestampMixin):
    """A queued maintenance operation scoped to one company."""

    __tablename__ = "maintenance_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    operation: Mapped[str] = mapped_column(String(64))
    company_id: Mapped[str] = mapped_column(String(64))
    requested_by: Mapped[Optional[str]] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    run_after: Mapped[datetime] = mapped_column(DateTime)

    # Lease
    worker_id: Mapped[Optional[str]] = mapped_column(String(200))
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index(
            "uq_maintenance_jobs_active",
            "operation", "company_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("idx_maintenance_jobs_claim", "status", "run_after", "created_at"),
        Index("idx_maintenance_jobs_company", "company_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<MaintenanceJob(id={self.id}, op={self.operation}, status={self.status})>"

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "operation": self.operation,
            "companyId": self.company_id,
            "requestedBy": self.requested_by,
            "status": self.status,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "runAfter": iso(self.run_after),
            "workerId": self.worker_id,
            "leaseExpiresAt": iso(self.lease_expires_at),
            "startedAt": iso(self.started_at),
            "finishedAt": iso(self.finished_at),
            "result": self.result,
            "lastError": self.last_error,
            "createdAt": iso(self.created_at),
        }
