import asyncio
from typing import Optional

import structlog

from smartwait.core.config import Settings, get_settings
from smartwait.core.database import DatabaseManager
from smartwait.services.event_publisher import EventPublisher, create_event_publisher
from smartwait.services.notification_service import NotificationService, delivery_worker
from smartwait.services.queue_service import QueueService
from smartwait.services.sms_transport import SMSTransport, create_transport

logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Owns the long-lived services of one application instance"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[DatabaseManager] = None,
        transport: Optional[SMSTransport] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or DatabaseManager(self.settings)
        self.transport = transport or create_transport(self.settings.notifications)
        self.publisher = publisher or create_event_publisher(self.settings.redis)

        self.notifications = NotificationService(self.db, self.transport, self.settings)
        self.queue = QueueService(self.db, self.notifications, self.publisher, self.settings)

        self._stop_event = asyncio.Event()
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def worker_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        await self.db.create_tables()

        if self.settings.notifications.WORKER_ENABLED:
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(delivery_worker(self.notifications, self._stop_event))

        logger.info(
            "Services started",
            transport=self.transport.name,
            publisher=type(self.publisher).__name__,
            worker_enabled=self.settings.notifications.WORKER_ENABLED,
        )

    async def stop(self) -> None:
        if self._worker_task is not None:
            self._stop_event.set()
            try:
                await asyncio.wait_for(self._worker_task, timeout=10)
            except asyncio.TimeoutError:
                self._worker_task.cancel()
                logger.warning("Delivery worker did not stop in time, cancelled")
            self._worker_task = None

        await self.transport.close()
        await self.publisher.close()
        await self.db.close()
        logger.info("Services stopped")
