"""
Custom exception classes for the synchronization engine.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class LedgerSyncError(Exception):
    """Base exception class for ledgersync."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(LedgerSyncError):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ValidationError(LedgerSyncError):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(LedgerSyncError):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class CircuitOpenError(LedgerSyncError):
    """Raised when the circuit breaker rejects a call without attempting it."""

    def __init__(self, retry_in: float):
        super().__init__(
            f"Circuit breaker is open, retry in {retry_in:.1f}s",
            "CIRCUIT_OPEN",
            {"retry_in_seconds": round(retry_in, 3)}
        )


class ChangeFeedUnsupportedError(LedgerSyncError):
    """Raised when the store cannot provide a push-based change feed."""

    def __init__(self, dialect: str):
        super().__init__(
            f"Change feed is not supported on dialect '{dialect}'",
            "CHANGE_FEED_UNSUPPORTED",
            {"dialect": dialect}
        )


class ImmutableLedgerError(LedgerSyncError):
    """Raised when code tries to rewrite or delete persisted ledger history."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "IMMUTABLE_LEDGER", details)


# Entity lookups
class PaymentNotFoundError(NotFoundError):
    """Raised when a payment is not found in the operational store."""

    def __init__(self, payment_id: str):
        super().__init__(
            f"Payment not found: {payment_id}",
            {"payment_id": payment_id}
        )


class LedgerNotFoundError(NotFoundError):
    """Raised when a ledger account is not found."""

    def __init__(self, account_id: str):
        super().__init__(
            f"Ledger account not found: {account_id}",
            {"account_id": account_id}
        )


class ScheduleNotFoundError(NotFoundError):
    """Raised when a named schedule is not registered."""

    def __init__(self, name: str):
        super().__init__(
            f"Schedule not found: {name}",
            {"schedule": name}
        )


class JobNotFoundError(NotFoundError):
    """Raised when a maintenance job is not found for the company."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Maintenance job not found: {job_id}",
            {"job_id": job_id}
        )


# Ledger business rules
class InsufficientBalanceError(ValidationError):
    """Raised when a payout exceeds the ledger's running balance."""

    def __init__(self, required, available):
        super().__init__(
            f"Insufficient balance: required {required}, available {available}",
            {"required": str(required), "available": str(available)}
        )
