"""
Detection strategy interface.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .types import ChangeEvent

EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class DetectionStrategy(ABC):
    """Produces change events for payments, properties and users."""

    mode: str = "none"

    def __init__(self):
        self._handler: Optional[EventHandler] = None
        self.is_running = False
        self.events_emitted = 0

    @abstractmethod
    async def start(self, handler: EventHandler) -> None:
        """Begin delivering events to ``handler``."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering events. In-flight handler calls are awaited."""

    async def _emit(self, event: ChangeEvent) -> None:
        if self._handler is None:
            return
        self.events_emitted += 1
        await self._handler(event)

    def get_status(self) -> dict:
        return {
            "mode": self.mode,
            "isRunning": self.is_running,
            "eventsEmitted": self.events_emitted,
        }
