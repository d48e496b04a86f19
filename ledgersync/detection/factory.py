"""
Detector selection: push first, poll when the store has no change feed.
"""

import structlog

from ledgersync.core.exceptions import ChangeFeedUnsupportedError
from ledgersync.services.data_access import ResilientDataAccess
from .base import DetectionStrategy, EventHandler
from .poll_detector import PollDetector
from .push_detector import PushDetector

logger = structlog.get_logger(__name__)


async def start_detector(
    push: PushDetector,
    poll: PollDetector,
    handler: EventHandler,
    data_access: ResilientDataAccess,
) -> DetectionStrategy:
    """Start ``push``; fall back to ``poll`` only when the feed is unsupported.

    Push start-up goes through the retry layer, so transient connection errors
    are retried. Any other error propagates to the caller.
    """
    try:
        await data_access.execute_with_retry(lambda: push.start(handler), description="start_change_feed")
        return push
    except ChangeFeedUnsupportedError as e:
        logger.warning(
            "Change feed unavailable, running in degraded polling mode",
            reason=e.message,
            **e.details
        )

    await poll.start(handler)
    return poll
