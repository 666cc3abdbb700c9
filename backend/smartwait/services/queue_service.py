"""
Queue service: check-in, staff transitions and queue views.

Every mutation runs in one store transaction that starts by taking the
queue lock. Allocation, the status change, recalculation and the outbox
notifications commit together; events are published only after commit.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
import uuid

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
import structlog

from smartwait.core.config import AppConstants, Settings, get_settings
from smartwait.core.database import DatabaseManager
from smartwait.core.exceptions import PatientNotFoundError, StoreConflictError, ValidationError
from smartwait.models.notification import MessageKind
from smartwait.models.queue import QueueStatus
from smartwait.schemas.notification import DeliveryOutcome
from smartwait.schemas.queue import (
    CallNextResult,
    CheckInRequest,
    CheckInResult,
    QueueEntryView,
    QueueStats,
    QueueStatusView,
)
from smartwait.services.event_publisher import EventPublisher, QueueEvent, QueueEventType
from smartwait.services.notification_service import NotificationService
from smartwait.services.position_allocator import PositionAllocator
from smartwait.services.queue_store import QueueStore
from smartwait.services.recalculation import PositionChange, RecalculationEngine
from smartwait.utils.clock import as_utc, utcnow
from smartwait.utils.phone import mask_phone, normalize_phone

logger = structlog.get_logger(__name__)


def _validation_message(error: PydanticValidationError) -> Tuple[str, List[Dict[str, Any]]]:
    fields = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        fields.append({"field": location, "message": item.get("msg", "")})
    summary = "; ".join(f"{f['field']}: {f['message']}" for f in fields) or "Invalid input"
    return summary, fields


class QueueService:
    """Transition engine and public queue API"""

    def __init__(
        self,
        db: DatabaseManager,
        notifications: NotificationService,
        publisher: EventPublisher,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.notifications = notifications
        self.publisher = publisher
        self.settings = settings or get_settings()

        minutes_per_position = self.settings.queue.WAIT_MINUTES_PER_POSITION
        self.allocator = PositionAllocator(minutes_per_position)
        self.recalculator = RecalculationEngine(minutes_per_position)

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[QueueStore, None]:
        """One locked store transaction; constraint violations at commit become StoreConflictError"""
        try:
            async with self.db.get_async_session() as session:
                store = QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY)
                await store.lock_queue()
                yield store
        except IntegrityError as e:
            logger.warning("Queue transaction conflict", error=str(e.orig))
            raise StoreConflictError() from e

    async def _queue_get_ready(self, store: QueueStore) -> None:
        """Queue the "get ready" text for whoever now waits at the configured position"""
        entry = await store.waiting_at_position(self.settings.queue.GET_READY_POSITION)
        if entry is None:
            return
        await self.notifications.enqueue_get_ready(
            store.session, entry.patient_id, entry.patient.phone, entry.patient.name
        )

    # Check-in

    async def check_in(self, name: str, phone: str, appointment_time: str) -> CheckInResult:
        """Add a patient at the tail of the queue and queue their confirmation text"""
        try:
            request = CheckInRequest(name=name, phone=phone, appointment_time=appointment_time)
        except PydanticValidationError as e:
            message, fields = _validation_message(e)
            raise ValidationError(message, details={"fields": fields}) from e

        normalized_phone = normalize_phone(request.phone)
        max_attempts = self.settings.queue.ALLOCATION_MAX_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            try:
                async with self._transaction() as store:
                    entry = await self.allocator.allocate(
                        store, request.name, normalized_phone, request.appointment_time
                    )
                    await self.notifications.enqueue(
                        store.session,
                        MessageKind.CHECK_IN_CONFIRMATION,
                        entry.patient_id,
                        normalized_phone,
                        name=request.name,
                        position=entry.position,
                        wait=entry.estimated_wait_minutes,
                    )
                    await self._queue_get_ready(store)
                    total = await store.count_active()
                break
            except StoreConflictError:
                if attempt >= max_attempts:
                    logger.error("Check-in failed after position conflicts", attempts=attempt)
                    raise
                logger.warning("Check-in position conflict, retrying", attempt=attempt)

        logger.info(
            "Patient checked in",
            patient_id=str(entry.patient_id),
            phone=mask_phone(normalized_phone),
            position=entry.position,
            estimated_wait_minutes=entry.estimated_wait_minutes,
        )

        await self.publisher.publish(
            QueueEvent(
                type=QueueEventType.PATIENT_CHECKED_IN,
                patient_id=entry.patient_id,
                position=entry.position,
                estimated_wait_minutes=entry.estimated_wait_minutes,
                total_in_queue=total,
            )
        )

        return CheckInResult(
            patient_id=entry.patient_id,
            position=entry.position,
            estimated_wait_minutes=entry.estimated_wait_minutes,
        )

    # Views

    async def get_position(self, patient_id: uuid.UUID) -> QueueStatusView:
        """Latest queue entry for a patient, whatever its status"""
        async with self.db.get_async_session() as session:
            store = QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY)
            entry = await store.latest_entry_for_patient(patient_id)
            if entry is None:
                raise PatientNotFoundError()
            total = await store.count_active()

        return QueueStatusView(
            patient_id=entry.patient_id,
            position=entry.position,
            status=entry.status,
            estimated_wait_minutes=entry.estimated_wait_minutes,
            total_in_queue=total,
            check_in_time=entry.check_in_time,
            called_at=entry.called_at,
            completed_at=entry.completed_at,
        )

    async def get_queue(self) -> List[QueueEntryView]:
        """Active entries ordered by position"""
        async with self.db.get_async_session() as session:
            store = QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY)
            entries = await store.active_entries()
            return [QueueEntryView.model_validate(entry) for entry in entries]

    # Staff transitions

    async def call_next(self) -> CallNextResult:
        """Call the waiting patient with the smallest position"""
        async with self._transaction() as store:
            entry = await store.next_waiting(for_update=True)
            if entry is None:
                logger.info("Call next requested on empty queue")
                return CallNextResult(success=False, message=AppConstants.NO_PATIENTS_WAITING_MESSAGE)

            entry.status = QueueStatus.CALLED
            entry.called_at = utcnow()
            await store.flush()

            await self.notifications.enqueue(
                store.session,
                MessageKind.CALL_NOW,
                entry.patient_id,
                entry.patient.phone,
                name=entry.patient.name,
            )
            await self._queue_get_ready(store)
            total = await store.count_active()
            view = QueueEntryView.model_validate(entry)

        logger.info("Patient called", patient_id=str(entry.patient_id), position=entry.position)

        await self.publisher.publish(
            QueueEvent(
                type=QueueEventType.PATIENT_CALLED,
                patient_id=entry.patient_id,
                position=entry.position,
                old_position=entry.position,
                estimated_wait_minutes=entry.estimated_wait_minutes,
                total_in_queue=total,
            )
        )

        return CallNextResult(
            success=True,
            message=f"Called {entry.patient.name} to the front desk",
            patient=view,
        )

    async def complete(self, patient_id: uuid.UUID) -> QueueEntryView:
        """Mark a patient's active entry completed and close the gap"""
        return await self._finish(patient_id, QueueStatus.COMPLETED)

    async def mark_no_show(self, patient_id: uuid.UUID) -> QueueEntryView:
        """Mark a patient's active entry as a no-show and close the gap"""
        return await self._finish(patient_id, QueueStatus.NO_SHOW)

    async def _finish(self, patient_id: uuid.UUID, status: QueueStatus) -> QueueEntryView:
        async with self._transaction() as store:
            entry = await store.find_active_by_patient(patient_id, for_update=True)
            if entry is None:
                raise PatientNotFoundError()

            old_position = entry.position
            entry.status = status
            entry.completed_at = utcnow()
            await store.flush()

            if status == QueueStatus.NO_SHOW:
                await self.notifications.cancel_pending(store.session, patient_id)

            changes = await self.recalculator.recalculate(store)
            await self._queue_get_ready(store)
            total = await store.count_active()
            view = QueueEntryView.model_validate(entry)

        logger.info(
            "Patient left queue",
            patient_id=str(patient_id),
            status=status.value,
            position=old_position,
            renumbered=len(changes),
        )

        event_type = (
            QueueEventType.PATIENT_COMPLETED if status == QueueStatus.COMPLETED else QueueEventType.PATIENT_NO_SHOW
        )
        await self.publisher.publish(
            QueueEvent(type=event_type, patient_id=patient_id, position=old_position, total_in_queue=total)
        )
        await self.publisher.publish_many(self._position_events(changes, total))

        return view

    @staticmethod
    def _position_events(changes: List[PositionChange], total: int) -> List[QueueEvent]:
        return [
            QueueEvent(
                type=QueueEventType.QUEUE_POSITION_UPDATED,
                patient_id=change.patient_id,
                position=change.new_position,
                old_position=change.old_position,
                estimated_wait_minutes=change.estimated_wait_minutes,
                total_in_queue=total,
            )
            for change in changes
        ]

    # Reporting

    async def stats(self) -> QueueStats:
        """Active counts plus wait figures for visits completed within the stats window"""
        window_hours = self.settings.queue.STATS_WINDOW_HOURS
        since = utcnow() - timedelta(hours=window_hours)

        async with self.db.get_async_session() as session:
            store = QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY)
            counts = await store.count_by_status()
            completed = await store.completed_within(since)

        waits = [
            (as_utc(completed_at) - as_utc(check_in_time)).total_seconds() / 60
            for check_in_time, completed_at in completed
        ]

        return QueueStats(
            waiting_count=counts[QueueStatus.WAITING],
            called_count=counts[QueueStatus.CALLED],
            completed_count=len(completed),
            average_wait_minutes=round(sum(waits) / len(waits)) if waits else 0,
            longest_wait_minutes=round(max(waits)) if waits else 0,
            window_hours=window_hours,
        )

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with self.db.get_async_session() as session:
                await QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY).count_active()
            return {"healthy": True, "message": "Queue service is healthy"}
        except Exception as e:
            logger.error("Queue health check failed", error=str(e))
            return {"healthy": False, "message": f"Queue service unavailable: {e}"}

    async def resend_notification(self, patient_id: uuid.UUID, kind: MessageKind) -> DeliveryOutcome:
        """Send a message to an active patient right away, outside the outbox"""
        async with self.db.get_async_session() as session:
            store = QueueStore(session, self.settings.queue.ADVISORY_LOCK_KEY)
            entry = await store.find_active_by_patient(patient_id)
            if entry is None:
                raise PatientNotFoundError()
            name, phone = entry.patient.name, entry.patient.phone
            position, wait = entry.position, entry.estimated_wait_minutes

        outcome = await self.notifications.send(
            kind, phone, patient_id, name=name, position=position, wait=wait
        )
        logger.info(
            "Notification re-sent",
            patient_id=str(patient_id),
            kind=kind.value,
            success=outcome.success,
            retries=outcome.retry_count,
        )
        return outcome
