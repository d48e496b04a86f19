"""
In-process event bus for sync notifications.

Components emit named events (``payment_synced``, ``sync_error``,
``scheduled_sync_error`` ...) and any number of listeners may subscribe.
Listener failures are logged and never reach the emitter.
"""

import asyncio
import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List

import structlog

from .clock import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class SyncEvent:
    """A single emitted event."""
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "payload": self.payload,
            "emittedAt": self.emitted_at.isoformat(),
        }


class EventBus:
    """Named-event publisher with sync and async listeners."""

    def __init__(self, history_size: int = 100):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._history: Deque[SyncEvent] = deque(maxlen=history_size)
        self._pending: set = set()

    def subscribe(self, name: str, listener: Callable) -> None:
        self._listeners[name].append(listener)

    def unsubscribe(self, name: str, listener: Callable) -> None:
        if listener in self._listeners.get(name, []):
            self._listeners[name].remove(listener)

    def emit(self, name: str, **payload: Any) -> SyncEvent:
        event = SyncEvent(name=name, payload=payload)
        self._history.append(event)

        for listener in list(self._listeners.get(name, [])):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception as e:
                logger.error("Event listener failed", event=name, error=str(e))
        return event

    def _on_listener_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event listener failed", error=str(task.exception()))

    def recent(self, limit: int = 20, name: str = None) -> List[SyncEvent]:
        events = [e for e in self._history if name is None or e.name == name]
        return events[-limit:]
