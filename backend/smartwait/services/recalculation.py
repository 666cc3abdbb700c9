from dataclasses import dataclass
from typing import List, Optional
import uuid

import structlog

from smartwait.services.queue_store import QueueStore
from smartwait.services.wait_time import estimate_wait_minutes

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PositionChange:
    """One active entry whose position moved during recalculation"""
    patient_id: uuid.UUID
    entry_id: uuid.UUID
    old_position: int
    new_position: int
    estimated_wait_minutes: int


class RecalculationEngine:
    """Renumbers the active set into a contiguous 1..N range"""

    def __init__(self, minutes_per_position: Optional[int] = None):
        self.minutes_per_position = minutes_per_position

    async def recalculate(self, store: QueueStore) -> List[PositionChange]:
        """
        Close gaps left by entries that became terminal.

        Must run inside the transaction that removed the entry, after the
        queue lock is taken. Relative order is preserved and only rows whose
        position or wait changed are written. Positions only ever move down,
        so writing in ascending order never collides with the unique index.
        """
        entries = await store.active_entries(for_update=True)
        changes: List[PositionChange] = []

        for new_position, entry in enumerate(entries, start=1):
            wait = estimate_wait_minutes(new_position, self.minutes_per_position)
            if entry.position == new_position and entry.estimated_wait_minutes == wait:
                continue

            old_position = entry.position
            await store.save_position(entry, new_position, wait)

            if old_position != new_position:
                changes.append(
                    PositionChange(
                        patient_id=entry.patient_id,
                        entry_id=entry.id,
                        old_position=old_position,
                        new_position=new_position,
                        estimated_wait_minutes=wait,
                    )
                )

        if changes:
            logger.info("Queue positions recalculated", moved=len(changes), active=len(entries))
        return changes
