"""
Database models for ledgersync.

Operational models describe the read-only source domain; ledger models hold
the append-only ledgers and the engine's own durable state.
"""

from .base import OperationalModel, LedgerModel, TimestampMixin
from .operational import (
    Payment, PaymentStatus, PaymentType, Property, Development, DevelopmentUnit, User
)
from .ledger import (
    LedgerAccount, LedgerTransaction, OwnerPayout, AccountKind, LedgerType,
    OwnerEntityType, TransactionType, PayoutStatus
)
from .sync_failure import SyncFailure, EntityKind, FailureStatus
from .ledger_event import LedgerEvent, LedgerEventType, LedgerEventStatus
from .maintenance_job import MaintenanceJob, JobStatus

__all__ = [
    "OperationalModel",
    "LedgerModel",
    "TimestampMixin",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "Property",
    "Development",
    "DevelopmentUnit",
    "User",
    "LedgerAccount",
    "LedgerTransaction",
    "OwnerPayout",
    "AccountKind",
    "LedgerType",
    "OwnerEntityType",
    "TransactionType",
    "PayoutStatus",
    "SyncFailure",
    "EntityKind",
    "FailureStatus",
    "LedgerEvent",
    "LedgerEventType",
    "LedgerEventStatus",
    "MaintenanceJob",
    "JobStatus",
]
