"""
Test circuit breaker state transitions.
"""

import pytest

from ledgersync.core.exceptions import CircuitOpenError, ValidationError
from ledgersync.services.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def failing():
    raise ConnectionError("store unreachable")


async def ok():
    return "ok"


@pytest.mark.asyncio
async def test_opens_after_max_failures_and_rejects_without_calling():
    """N consecutive failures open the breaker; the next call never reaches the operation."""
    clock = FakeClock()
    breaker = CircuitBreaker(max_failures=3, reset_timeout=30, clock=clock)

    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)
    assert breaker.state == CircuitState.OPEN

    calls = []

    async def tracked():
        calls.append(1)
        return "ok"

    with pytest.raises(CircuitOpenError):
        await breaker.execute(tracked)
    assert calls == []
    assert breaker.get_state().rejected_calls == 1


@pytest.mark.asyncio
async def test_half_open_probe_success_closes():
    """After the reset timeout one probe is allowed; success closes and resets the count."""
    clock = FakeClock()
    breaker = CircuitBreaker(max_failures=2, reset_timeout=30, clock=clock)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)

    clock.now += 31
    assert await breaker.execute(ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_probe_failure_reopens():
    """A failed probe reopens the breaker immediately."""
    clock = FakeClock()
    breaker = CircuitBreaker(max_failures=2, reset_timeout=30, clock=clock)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)

    clock.now += 31
    with pytest.raises(ConnectionError):
        await breaker.execute(failing)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(ok)


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    """Failures must be consecutive to open the breaker."""
    breaker = CircuitBreaker(max_failures=3, reset_timeout=30, clock=FakeClock())
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)
    await breaker.execute(ok)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_excluded_exceptions_do_not_count():
    """Business errors prove the dependency answered and never trip the breaker."""
    breaker = CircuitBreaker(max_failures=1, reset_timeout=30, excluded_exceptions=(ValidationError,))

    async def invalid():
        raise ValidationError("bad input")

    for _ in range(3):
        with pytest.raises(ValidationError):
            await breaker.execute(invalid)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_state().total_failures == 0
