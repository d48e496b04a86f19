"""
Declarative bases for both stores.

The operational store and the ledger store are separate databases, so each
gets its own metadata.
"""

from datetime import datetime

from sqlalchemy import DateTime, Numeric
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ledgersync.core.clock import utcnow


# Money columns
Money = Numeric(14, 2, asdecimal=True)


class OperationalModel(DeclarativeBase):
    """Base for tables owned by the operational domain."""


class LedgerModel(DeclarativeBase):
    """Base for ledger tables and engine state."""


class TimestampMixin:
    """Adds created/updated timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        comment="Row creation time (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        index=True,
        comment="Last modification time (UTC)"
    )
