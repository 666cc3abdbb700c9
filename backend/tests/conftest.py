from typing import List, Tuple

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from smartwait.core.config import DatabaseSettings, NotificationSettings, Settings
from smartwait.core.database import DatabaseManager
from smartwait.main import create_application
from smartwait.services.container import ServiceContainer
from smartwait.services.delivery_policy import RetryPolicy
from smartwait.services.event_publisher import RecordingEventPublisher
from smartwait.services.notification_service import NotificationService
from smartwait.services.queue_service import QueueService
from smartwait.services.sms_transport import SMSTransport, TransportReceipt


class FakeSMSTransport(SMSTransport):
    """Transport double that records messages and can fail on demand"""

    name = "fake"

    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []
        self.failures: List[Exception] = []
        self.statuses = {}

    async def deliver(self, phone: str, message: str) -> TransportReceipt:
        if self.failures:
            raise self.failures.pop(0)
        external_id = f"SM{len(self.sent) + 1:04d}"
        self.sent.append((phone, message, external_id))
        return TransportReceipt(external_id=external_id, status="sent")

    async def fetch_status(self, external_id: str) -> str:
        return self.statuses.get(external_id, "delivered")

    def messages_to(self, phone: str) -> List[str]:
        return [message for to, message, _ in self.sent if to == phone]


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        LOG_LEVEL="WARNING",
        database=DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'smartwait.db'}"),
        notifications=NotificationSettings(WORKER_ENABLED=False),
    )


@pytest.fixture
def transport() -> FakeSMSTransport:
    return FakeSMSTransport()


@pytest.fixture
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    # Zero delays so rescheduled rows are due again immediately
    return RetryPolicy(max_retries=3, base_delay_ms=0, max_delay_ms=0, jitter_ratio=0.0)


@pytest_asyncio.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def notification_service(db, transport, settings, retry_policy) -> NotificationService:
    return NotificationService(db, transport, settings, policy=retry_policy, sleep=no_sleep)


@pytest.fixture
def queue_service(db, notification_service, publisher, settings) -> QueueService:
    return QueueService(db, notification_service, publisher, settings)


@pytest.fixture
def client(settings, transport, publisher):
    services = ServiceContainer(settings, transport=transport, publisher=publisher)
    app = create_application(settings, services=services)
    with TestClient(app) as test_client:
        yield test_client
