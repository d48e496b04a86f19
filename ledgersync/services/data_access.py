"""
Resilient data access: retry with backoff plus the shared circuit breaker.

Every store write path goes through ``ResilientDataAccess.execute_with_retry``.
Only transient infrastructure errors are retried; integrity and validation
errors fail fast.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

import pydantic
import structlog
from sqlalchemy import exc as sa_exc

from ledgersync.core.exceptions import (
    ChangeFeedUnsupportedError,
    CircuitOpenError,
    ImmutableLedgerError,
    ValidationError,
)
from .circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_LABELS = {"TransientTransactionError", "RetryableWriteError"}

# PostgreSQL SQLSTATEs worth retrying
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03", "57P01", "57P02", "57P03", "53300"}
TRANSIENT_SQLSTATE_CLASSES = ("08",)

TRANSIENT_MESSAGES = ("database is locked", "connection reset", "timed out", "econnreset", "etimedout")

NON_RETRIABLE = (
    sa_exc.IntegrityError,
    ValidationError,
    pydantic.ValidationError,
    ImmutableLedgerError,
    CircuitOpenError,
    ChangeFeedUnsupportedError,
)


@dataclass
class ErrorInfo:
    """Classification record stored with sync failures."""
    name: str
    message: str
    code: Optional[str] = None
    labels: List[str] = field(default_factory=list)


def _sqlstate(error: BaseException) -> Optional[str]:
    candidates = [error, getattr(error, "orig", None)]
    orig = getattr(error, "orig", None)
    if orig is not None:
        candidates.append(orig.__cause__)
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if isinstance(code, str):
            return code
    return None


def error_labels(error: BaseException) -> List[str]:
    labels = getattr(error, "error_labels", None) or getattr(error, "labels", None) or []
    return [str(label) for label in labels]


def describe_error(error: BaseException) -> ErrorInfo:
    code = _sqlstate(error) or getattr(error, "code", None)
    return ErrorInfo(
        name=type(error).__name__,
        message=str(error)[:2000],
        code=str(code) if code is not None else None,
        labels=error_labels(error),
    )


def is_retriable(error: BaseException) -> bool:
    """True for transient infrastructure errors only."""
    if isinstance(error, NON_RETRIABLE):
        return False

    if TRANSIENT_LABELS.intersection(error_labels(error)):
        return True

    if isinstance(error, (ConnectionError, asyncio.TimeoutError, TimeoutError)):
        return True

    if isinstance(error, (sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return True

    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        state = _sqlstate(error)
        if state and (state in TRANSIENT_SQLSTATES or state.startswith(TRANSIENT_SQLSTATE_CLASSES)):
            return True
        if isinstance(error, sa_exc.OperationalError):
            return True

    if isinstance(error, OSError):
        return True

    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


class ResilientDataAccess:
    """Retry-with-backoff wrapper routed through a circuit breaker."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.circuit_breaker = circuit_breaker
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self.logger = logger.bind(service="data_access")

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        description: str = "store operation",
    ) -> T:
        """
        Run ``operation`` with retries for transient errors.

        Args:
            operation: zero-argument coroutine factory, called once per attempt
            max_retries: retries after the first attempt
            base_delay: backoff unit; attempt n waits ``base_delay * n``
        """
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.base_delay if base_delay is None else base_delay

        async def attempt_loop() -> T:
            attempt = 0
            while True:
                try:
                    return await operation()
                except Exception as e:
                    attempt += 1
                    if attempt > retries or not is_retriable(e):
                        raise
                    wait = delay * attempt
                    self.logger.warning(
                        "Transient store error, retrying",
                        operation=description,
                        attempt=attempt,
                        max_retries=retries,
                        wait_seconds=wait,
                        error=str(e)
                    )
                    await self._sleep(wait)

        return await self.circuit_breaker.execute(attempt_loop)


def create_data_access(max_failures: int, reset_timeout: float,
                       max_retries: int, base_delay: float) -> ResilientDataAccess:
    breaker = CircuitBreaker(
        max_failures=max_failures,
        reset_timeout=reset_timeout,
        excluded_exceptions=(
            sa_exc.IntegrityError,
            ValidationError,
            pydantic.ValidationError,
            ImmutableLedgerError,
            ChangeFeedUnsupportedError,
        ),
    )
    return ResilientDataAccess(breaker, max_retries=max_retries, base_delay=base_delay)
