"""
Standalone worker: runs detection, schedules and the maintenance queue
without the HTTP API.
"""

import asyncio
import signal

import structlog

from ledgersync.core.config import get_settings
from ledgersync.core.context import AppContext
from ledgersync.core.logging import setup_logging

logger = structlog.get_logger(__name__)


class Worker:
    """Runs an ``AppContext`` until a shutdown signal arrives."""

    def __init__(self, context: AppContext):
        self.context = context
        self._shutdown = asyncio.Event()

    def request_shutdown(self, signum=None) -> None:
        logger.info("Shutdown requested", signal=signum)
        self._shutdown.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: self.request_shutdown(signum))

        await self.context.start()
        logger.info("Worker running", mode=self.context.sync_service.mode)
        try:
            await self._shutdown.wait()
        finally:
            await self.context.stop()


async def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    worker = Worker(AppContext(settings))
    try:
        await worker.run()
    except Exception as e:
        logger.error("Worker failed", error=str(e))
        raise


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
