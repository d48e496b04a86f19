"""
Circuit breaker shared by every store write path.

closed -> open after ``max_failures`` consecutive failures; open rejects calls
with CircuitOpenError until ``reset_timeout`` has elapsed; the next call runs
half-open and either closes the breaker (success) or re-opens it (failure).
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from ledgersync.core.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    state: str
    failure_count: int
    total_calls: int
    total_failures: int
    rejected_calls: int
    last_failure_at: Optional[float]

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "failureCount": self.failure_count,
            "totalCalls": self.total_calls,
            "totalFailures": self.total_failures,
            "rejectedCalls": self.rejected_calls,
        }


class CircuitBreaker:
    """Consecutive-failure circuit breaker for async operations."""

    def __init__(
        self,
        max_failures: int = 5,
        reset_timeout: float = 30.0,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
        name: str = "store",
    ):
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock
        self.name = name

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None

        self.total_calls = 0
        self.total_failures = 0
        self.rejected_calls = 0
        self._lock = asyncio.Lock()
        self.logger = logger.bind(breaker=name)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker."""
        await self._before_call()
        self.total_calls += 1

        try:
            result = await operation()
        except self.excluded_exceptions:
            # Not a dependency failure, but it proves the store answered
            await self._on_success()
            raise
        except Exception:
            await self._on_failure()
            raise

        await self._on_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return

            elapsed = self._clock() - (self.last_failure_at or 0.0)
            if elapsed < self.reset_timeout:
                self.rejected_calls += 1
                raise CircuitOpenError(self.reset_timeout - elapsed)

            self.state = CircuitState.HALF_OPEN
            self.logger.info("Circuit breaker half-open, probing dependency")

    async def _on_success(self) -> None:
        async with self._lock:
            if self.state != CircuitState.CLOSED:
                self.logger.info("Circuit breaker closed", previous_state=self.state.value)
            self.state = CircuitState.CLOSED
            self.failure_count = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.total_failures += 1
            self.last_failure_at = self._clock()

            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.max_failures:
                if self.state != CircuitState.OPEN:
                    self.logger.warning(
                        "Circuit breaker opened",
                        failure_count=self.failure_count,
                        reset_timeout=self.reset_timeout
                    )
                self.state = CircuitState.OPEN

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at = None

    def get_state(self) -> CircuitStats:
        return CircuitStats(
            state=self.state.value,
            failure_count=self.failure_count,
            total_calls=self.total_calls,
            total_failures=self.total_failures,
            rejected_calls=self.rejected_calls,
            last_failure_at=self.last_failure_at,
        )
