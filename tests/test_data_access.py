"""
Test error classification and the retry layer.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ledgersync.core.exceptions import CircuitOpenError, ImmutableLedgerError, ValidationError
from ledgersync.services.circuit_breaker import CircuitBreaker, CircuitState
from ledgersync.services.data_access import (
    ResilientDataAccess,
    create_data_access,
    describe_error,
    is_retriable,
)


class PgError(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"pg error {sqlstate}")
        self.sqlstate = sqlstate


class LabelledError(Exception):
    error_labels = ["TransientTransactionError"]


def test_non_retriable_errors():
    """Integrity and validation errors are never retried."""
    assert not is_retriable(IntegrityError("INSERT", {}, Exception("duplicate key")))
    assert not is_retriable(ValidationError("bad"))
    assert not is_retriable(ImmutableLedgerError("no"))
    assert not is_retriable(CircuitOpenError(5.0))
    assert not is_retriable(ValueError("unexpected"))


def test_retriable_errors():
    """Connection-level and transient server errors are retried."""
    assert is_retriable(ConnectionError("reset"))
    assert is_retriable(TimeoutError())
    assert is_retriable(LabelledError("retry me"))
    assert is_retriable(OperationalError("SELECT 1", {}, PgError("40001")))
    assert is_retriable(OperationalError("SELECT 1", {}, Exception("database is locked")))


def test_describe_error_reads_sqlstate():
    info = describe_error(OperationalError("SELECT 1", {}, PgError("40P01")))
    assert info.name == "OperationalError"
    assert info.code == "40P01"


async def no_sleep(seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retries_transient_errors_then_succeeds():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset by peer")
        return "done"

    access = ResilientDataAccess(CircuitBreaker(max_failures=5), max_retries=3, base_delay=0.1, sleep=no_sleep)
    assert await access.execute_with_retry(flaky) == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_backoff_is_linear_in_attempt():
    waits = []

    async def record_sleep(seconds: float) -> None:
        waits.append(seconds)

    async def always_down():
        raise ConnectionError("down")

    access = ResilientDataAccess(CircuitBreaker(max_failures=5), max_retries=3, base_delay=0.5, sleep=record_sleep)
    with pytest.raises(ConnectionError):
        await access.execute_with_retry(always_down)
    assert waits == [0.5, 1.0, 1.5]


@pytest.mark.asyncio
async def test_non_retriable_error_fails_fast_and_keeps_breaker_closed():
    calls = []

    async def conflict():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("duplicate"))

    access = create_data_access(max_failures=1, reset_timeout=30, max_retries=3, base_delay=0)
    with pytest.raises(IntegrityError):
        await access.execute_with_retry(conflict)
    assert len(calls) == 1
    assert access.circuit_breaker.state == CircuitState.CLOSED
