"""
Application context: builds and owns every component.

Both the HTTP app and the standalone worker run the engine through one
``AppContext``; there are no module-level service instances.
"""

from typing import Any, Dict, Optional

from .config import Settings, get_settings
from .database import create_databases
from .events import EventBus
from .logging import get_logger

logger = get_logger(__name__)


class AppContext:
    """Constructs the engine from settings and drives its lifecycle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        operational_url: Optional[str] = None,
        ledger_url: Optional[str] = None,
    ):
        from ledgersync.detection.poll_detector import PollDetector
        from ledgersync.detection.push_detector import PushDetector
        from ledgersync.models.sync_failure import EntityKind
        from ledgersync.scheduler.job_scheduler import JobScheduler
        from ledgersync.services.consistency_checker import ConsistencyChecker
        from ledgersync.services.data_access import create_data_access
        from ledgersync.services.deduplicator import Deduplicator
        from ledgersync.services.failure_ledger import FailureLedger
        from ledgersync.services.health import HealthService
        from ledgersync.services.ledger_events import LedgerEventQueue
        from ledgersync.services.ledger_poster import LedgerPoster
        from ledgersync.services.ledger_store import LedgerStore
        from ledgersync.services.maintenance_queue import MaintenanceQueue, build_operations
        from ledgersync.services.operational_reader import OperationalReader
        from ledgersync.services.sync_service import SyncService

        self.settings = settings or get_settings()
        s = self.settings

        self.operational_db, self.ledger_db = create_databases(s, operational_url, ledger_url)
        self.event_bus = EventBus()
        self.data_access = create_data_access(
            max_failures=s.circuit_breaker_max_failures,
            reset_timeout=s.circuit_breaker_reset_timeout,
            max_retries=s.retry_max_attempts,
            base_delay=s.retry_base_delay,
        )

        self.reader = OperationalReader(self.operational_db, self.data_access)
        self.store = LedgerStore(self.ledger_db, self.data_access)
        self.deduplicator = Deduplicator(self.ledger_db, self.store)
        self.ledger_events = LedgerEventQueue(self.ledger_db, self.data_access)
        self.failure_ledger = FailureLedger(
            self.ledger_db,
            self.data_access,
            max_attempts=s.failure_max_attempts,
            base_backoff=s.failure_base_backoff,
            max_backoff=s.failure_max_backoff,
        )
        self.poster = LedgerPoster(self.store, self.reader, self.deduplicator, self.ledger_events)
        self.checker = ConsistencyChecker(self.store, self.reader, self.poster, self.deduplicator)

        self.push_detector = PushDetector(
            self.operational_db,
            self.reader,
            channel=s.change_feed_channel,
            install_triggers=s.change_feed_install_triggers,
        )
        self.poll_detector = PollDetector(
            self.reader,
            intervals={
                EntityKind.PAYMENT: s.payment_poll_interval,
                EntityKind.PROPERTY: s.property_poll_interval,
                EntityKind.USER: s.user_poll_interval,
            },
            lookback_factor=s.poll_lookback_factor,
            batch_size=s.poll_batch_size,
        )

        self.sync_service = SyncService(
            reader=self.reader,
            poster=self.poster,
            failure_ledger=self.failure_ledger,
            ledger_events=self.ledger_events,
            deduplicator=self.deduplicator,
            push_detector=self.push_detector,
            poll_detector=self.poll_detector,
            data_access=self.data_access,
            event_bus=self.event_bus,
            ledger_event_interval=s.ledger_event_interval,
            ledger_event_batch_size=s.ledger_event_batch_size,
            failure_batch_size=s.failure_batch_size,
            full_sync_batch_size=s.full_sync_batch_size,
        )

        self.maintenance_queue = MaintenanceQueue(
            self.ledger_db,
            self.data_access,
            build_operations(self.reader, self.poster, batch_size=s.full_sync_batch_size),
            poll_interval=s.maintenance_poll_interval,
            lease_seconds=s.maintenance_lease_seconds,
            max_attempts=s.maintenance_max_attempts,
        )

        self.scheduler = JobScheduler(self.event_bus)
        self.scheduler.register_defaults(
            self.sync_service,
            self.checker,
            self.maintenance_queue,
            consistency_lookback_days=s.consistency_lookback_days,
            consistency_concurrency=s.consistency_concurrency,
        )

        self.health = HealthService(
            self.sync_service,
            self.checker,
            self.failure_ledger,
            self.scheduler,
            quick_timeout=s.consistency_quick_timeout,
            quick_lookback_days=s.consistency_quick_lookback_days,
            deep_lookback_days=s.consistency_lookback_days,
            concurrency=s.consistency_concurrency,
            failure_threshold=s.health_failure_threshold,
        )

        self.started = False
        self.logger = logger.bind(component="app_context")

    async def init_schema(self) -> None:
        from ledgersync.models.base import LedgerModel

        await self.ledger_db.create_all(LedgerModel.metadata)

    async def start(self) -> None:
        s = self.settings
        self.logger.info("Starting ledgersync", environment=s.environment)

        if s.auto_create_tables:
            await self.init_schema()

        if s.realtime_sync_enabled:
            try:
                await self.sync_service.start_realtime_sync()
            except Exception as e:
                # Health reports the stopped detector; schedules keep running
                self.logger.error("Failed to start real-time sync", error=str(e))

        if s.scheduler_enabled:
            await self.scheduler.start_all()

        if s.maintenance_queue_enabled:
            await self.maintenance_queue.start()

        self.started = True
        self.logger.info("ledgersync started", mode=self.sync_service.mode)

    async def stop(self) -> None:
        self.logger.info("Stopping ledgersync")
        await self.maintenance_queue.stop()
        await self.scheduler.stop_all()
        await self.sync_service.shutdown()
        await self.operational_db.dispose()
        await self.ledger_db.dispose()
        self.started = False
        self.logger.info("ledgersync stopped")

    async def database_health(self) -> Dict[str, Any]:
        operational = await self.operational_db.health_check()
        ledger = await self.ledger_db.health_check()
        return {
            "status": "healthy" if operational and ledger else "unhealthy",
            "databases": {"operational": operational, "ledger": ledger},
        }
