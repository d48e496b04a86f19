"""
ledgersync

Synchronization and reconciliation engine that propagates financial events
from an operational store into append-only property and company ledgers:
- Change detection (PostgreSQL LISTEN/NOTIFY or timestamp polling)
- Idempotent ledger posting with durable failure tracking
- Scheduled consistency audits and self-healing
- Lease-based maintenance job queue
"""

__version__ = "0.1.0"
