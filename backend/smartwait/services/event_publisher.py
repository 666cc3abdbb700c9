"""
Queue event broadcasting.

Events are published after the queue transaction commits. A publisher
never raises: a lost broadcast only delays a client display refresh, it
must not fail the queue operation that produced it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import enum
import json
import uuid

import redis.asyncio as redis
import structlog

from smartwait.core.config import RedisSettings, get_settings
from smartwait.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class QueueEventType(str, enum.Enum):
    PATIENT_CHECKED_IN = "patient_checked_in"
    PATIENT_CALLED = "patient_called"
    PATIENT_COMPLETED = "patient_completed"
    PATIENT_NO_SHOW = "patient_no_show"
    QUEUE_POSITION_UPDATED = "queue_position_updated"


@dataclass
class QueueEvent:
    type: QueueEventType
    patient_id: Optional[uuid.UUID] = None
    position: Optional[int] = None
    old_position: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    total_in_queue: Optional[int] = None
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "type": self.type.value,
            "patient_id": str(self.patient_id) if self.patient_id else None,
            "position": self.position,
            "old_position": self.old_position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "total_in_queue": self.total_in_queue,
            "timestamp": self.timestamp.isoformat(),
        }


class EventPublisher:
    """Base publisher; subclasses implement ``_send``"""

    async def publish(self, event: QueueEvent) -> None:
        try:
            await self._send(event)
        except Exception as e:
            logger.error(
                "Failed to publish queue event",
                event_type=event.type.value,
                patient_id=str(event.patient_id) if event.patient_id else None,
                error=str(e),
            )

    async def publish_many(self, events: List[QueueEvent]) -> None:
        for event in events:
            await self.publish(event)

    async def _send(self, event: QueueEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RecordingEventPublisher(EventPublisher):
    """Keeps events in memory; used when Redis broadcasting is disabled"""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: List[QueueEvent] = []

    async def _send(self, event: QueueEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]
        logger.debug("Queue event recorded", event_type=event.type.value)

    def of_type(self, event_type: QueueEventType) -> List[QueueEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class RedisEventPublisher(EventPublisher):
    """Publishes JSON-encoded events on a Redis pub/sub channel"""

    def __init__(self, settings: Optional[RedisSettings] = None, client: Optional[redis.Redis] = None):
        self.settings = settings or get_settings().redis
        self.channel = self.settings.EVENTS_CHANNEL
        self.redis_client: Optional[redis.Redis] = client

    async def _get_redis_client(self) -> redis.Redis:
        if not self.redis_client:
            self.redis_client = redis.from_url(
                str(self.settings.REDIS_URL),
                socket_timeout=self.settings.REDIS_TIMEOUT,
                decode_responses=True,
            )
        return self.redis_client

    async def _send(self, event: QueueEvent) -> None:
        client = await self._get_redis_client()
        receivers = await client.publish(self.channel, json.dumps(event.to_dict()))
        logger.debug(
            "Queue event published",
            event_type=event.type.value,
            channel=self.channel,
            receivers=receivers,
        )

    async def ping(self) -> bool:
        try:
            client = await self._get_redis_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


def create_event_publisher(settings: Optional[RedisSettings] = None) -> EventPublisher:
    settings = settings or get_settings().redis
    if settings.EVENTS_ENABLED:
        return RedisEventPublisher(settings)
    return RecordingEventPublisher()
