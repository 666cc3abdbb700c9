from typing import Optional

import structlog

from smartwait.core.exceptions import DuplicateActiveEntry
from smartwait.models.queue import QueueEntry
from smartwait.services.queue_store import QueueStore
from smartwait.services.wait_time import estimate_wait_minutes
from smartwait.utils.phone import mask_phone

logger = structlog.get_logger(__name__)


class PositionAllocator:
    """Assigns the next free position to a new check-in"""

    def __init__(self, minutes_per_position: Optional[int] = None):
        self.minutes_per_position = minutes_per_position

    async def allocate(
        self,
        store: QueueStore,
        name: str,
        phone: str,
        appointment_time: str,
    ) -> QueueEntry:
        """
        Create a waiting entry at the tail of the active queue.

        ``phone`` must already be normalized. Raises DuplicateActiveEntry if
        the number owns an active entry and StoreConflictError if another
        transaction took the same position first.
        """
        existing = await store.find_active_by_phone(phone)
        if existing is not None:
            logger.info(
                "Rejected duplicate check-in",
                phone=mask_phone(phone),
                existing_position=existing.position,
            )
            raise DuplicateActiveEntry()

        position = await store.max_active_position() + 1
        wait = estimate_wait_minutes(position, self.minutes_per_position)

        entry = await store.add_patient_with_entry(
            name=name,
            phone=phone,
            appointment_time=appointment_time,
            position=position,
            estimated_wait_minutes=wait,
        )

        logger.debug("Allocated queue position", patient_id=str(entry.patient_id), position=position)
        return entry
