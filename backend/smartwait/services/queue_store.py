from datetime import datetime
from typing import Dict, List, Optional, Tuple
import uuid

from sqlalchemy import select, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import text
import structlog

from smartwait.core.config import get_settings
from smartwait.core.exceptions import StoreConflictError
from smartwait.models.patient import Patient
from smartwait.models.queue import QueueEntry, QueueStatus, ACTIVE_STATUSES

logger = structlog.get_logger(__name__)


class QueueStore:
    """
    Data access for patients and queue entries.

    A store is bound to one session, i.e. one transaction; every read and
    write made through it commits or rolls back together.
    """

    def __init__(self, session: AsyncSession, lock_key: Optional[int] = None):
        self.session = session
        self.lock_key = lock_key if lock_key is not None else get_settings().queue.ADVISORY_LOCK_KEY

    @property
    def dialect_name(self) -> str:
        return self.session.bind.dialect.name

    async def lock_queue(self) -> None:
        """Serialize queue mutations for the rest of this transaction"""
        if self.dialect_name == "postgresql":
            await self.session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": self.lock_key}
            )
        # SQLite transactions begin IMMEDIATE, so the write lock is already held

    async def active_entries(self, for_update: bool = False) -> List[QueueEntry]:
        """Active entries ordered by position ascending"""
        query = (
            select(QueueEntry)
            .where(QueueEntry.status.in_(ACTIVE_STATUSES))
            .order_by(QueueEntry.position.asc())
        )
        if for_update:
            query = query.with_for_update(of=QueueEntry)
        result = await self.session.execute(query)
        return list(result.scalars().unique().all())

    async def max_active_position(self) -> int:
        result = await self.session.execute(
            select(func.max(QueueEntry.position)).where(QueueEntry.status.in_(ACTIVE_STATUSES))
        )
        return result.scalar() or 0

    async def count_active(self) -> int:
        result = await self.session.execute(
            select(func.count(QueueEntry.id)).where(QueueEntry.status.in_(ACTIVE_STATUSES))
        )
        return result.scalar() or 0

    async def find_active_by_phone(self, phone: str) -> Optional[QueueEntry]:
        result = await self.session.execute(
            select(QueueEntry)
            .join(Patient, QueueEntry.patient_id == Patient.id)
            .where(Patient.phone == phone)
            .where(QueueEntry.status.in_(ACTIVE_STATUSES))
            .limit(1)
        )
        return result.scalars().first()

    async def find_active_by_patient(
        self, patient_id: uuid.UUID, for_update: bool = False
    ) -> Optional[QueueEntry]:
        query = (
            select(QueueEntry)
            .where(QueueEntry.patient_id == patient_id)
            .where(QueueEntry.status.in_(ACTIVE_STATUSES))
            .order_by(desc(QueueEntry.check_in_time))
            .limit(1)
        )
        if for_update:
            query = query.with_for_update(of=QueueEntry)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def latest_entry_for_patient(self, patient_id: uuid.UUID) -> Optional[QueueEntry]:
        """Most recent entry for a patient, in any status"""
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.patient_id == patient_id)
            .order_by(desc(QueueEntry.check_in_time))
            .limit(1)
        )
        return result.scalars().first()

    async def next_waiting(self, for_update: bool = False) -> Optional[QueueEntry]:
        """Waiting entry with the smallest position"""
        query = (
            select(QueueEntry)
            .where(QueueEntry.status == QueueStatus.WAITING)
            .order_by(QueueEntry.position.asc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update(of=QueueEntry)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def waiting_at_position(self, position: int) -> Optional[QueueEntry]:
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.status == QueueStatus.WAITING)
            .where(QueueEntry.position == position)
            .limit(1)
        )
        return result.scalars().first()

    async def add_patient_with_entry(
        self,
        name: str,
        phone: str,
        appointment_time: str,
        position: int,
        estimated_wait_minutes: int,
    ) -> QueueEntry:
        """Insert a patient and their waiting entry; flushes so conflicts surface here"""
        patient = Patient(name=name, phone=phone)
        entry = QueueEntry(
            patient=patient,
            position=position,
            status=QueueStatus.WAITING,
            estimated_wait_minutes=estimated_wait_minutes,
            appointment_time=appointment_time,
        )
        self.session.add_all([patient, entry])

        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning("Queue position conflict on insert", position=position, error=str(e.orig))
            raise StoreConflictError() from e

        return entry

    async def save_position(self, entry: QueueEntry, position: int, estimated_wait_minutes: int) -> None:
        """Persist one renumbered entry immediately so updates apply in the caller's order"""
        entry.position = position
        entry.estimated_wait_minutes = estimated_wait_minutes
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning("Queue position conflict on renumber", position=position, error=str(e.orig))
            raise StoreConflictError() from e

    async def flush(self) -> None:
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise StoreConflictError() from e

    async def count_by_status(self) -> Dict[QueueStatus, int]:
        result = await self.session.execute(
            select(QueueEntry.status, func.count(QueueEntry.id)).group_by(QueueEntry.status)
        )
        counts = {status: 0 for status in QueueStatus}
        for status, count in result.all():
            counts[QueueStatus(status)] = count
        return counts

    async def completed_within(self, since: datetime) -> List[Tuple[datetime, datetime]]:
        """(check_in_time, completed_at) for entries completed since ``since``"""
        result = await self.session.execute(
            select(QueueEntry.check_in_time, QueueEntry.completed_at)
            .where(QueueEntry.status == QueueStatus.COMPLETED)
            .where(QueueEntry.completed_at.is_not(None))
            .where(QueueEntry.completed_at >= since)
        )
        return [(row[0], row[1]) for row in result.all()]
