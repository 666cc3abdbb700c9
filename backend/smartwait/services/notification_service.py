"""
Delivery reliability layer.

Queue transitions never talk to the SMS provider directly. They write a
pending ``NotificationRecord`` inside their own transaction (the outbox) and
the delivery worker drains it afterwards. Transient failures are retried
with jittered exponential backoff by rescheduling the same row; permanent
failures and exhausted budgets mark the row failed. Nothing raised here
reaches a queue caller.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
import uuid

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from smartwait.core.config import Settings, get_settings
from smartwait.core.database import DatabaseManager
from smartwait.core.exceptions import DeliveryError
from smartwait.models.notification import MessageKind, NotificationRecord, NotificationStatus
from smartwait.schemas.notification import DeliveryOutcome, DeliveryStats
from smartwait.services.delivery_policy import RetryPolicy, calculate_retry_delay, is_retryable_error
from smartwait.services.sms_transport import SMSTransport
from smartwait.utils.clock import utcnow
from smartwait.utils.phone import is_valid_phone

logger = structlog.get_logger(__name__)


MESSAGE_TEMPLATES: Dict[MessageKind, str] = {
    MessageKind.CHECK_IN_CONFIRMATION: (
        "Hello {name}! You're checked in at position {position}. "
        "Estimated wait: {wait} minutes. We'll text you when it's almost your turn."
    ),
    MessageKind.GET_READY: (
        "{name}, you're next! Please head to the facility now. "
        "We'll call you in about {minutes} minutes."
    ),
    MessageKind.CALL_NOW: "{name}, it's your turn! Please come to the front desk now.",
    MessageKind.FOLLOW_UP: (
        "{name}, this is a reminder that it's your turn. Please come to the front desk "
        "immediately or you may lose your place in line."
    ),
}

UNDELIVERED_STATUSES = (NotificationStatus.PENDING, NotificationStatus.SENT)

OUTCOME_FIELDS = (
    "status",
    "external_id",
    "retry_count",
    "error_message",
    "next_attempt_at",
    "sent_at",
    "delivered_at",
    "failed_at",
    "updated_at",
)


def render_message(kind: MessageKind, **template_args: Any) -> str:
    """Fill a message template; raises KeyError if an argument is missing"""
    return MESSAGE_TEMPLATES[MessageKind(kind)].format(**template_args)


@dataclass
class DispatchSummary:
    """Outcome counts of one outbox pass"""
    sent: int = 0
    retried: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.retried + self.failed


class NotificationService:
    """Outbox writer, dispatcher and delivery bookkeeping"""

    def __init__(
        self,
        db: DatabaseManager,
        transport: SMSTransport,
        settings: Optional[Settings] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.transport = transport
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings.notifications)
        self._sleep = sleep

    # Outbox writes (run inside the caller's queue transaction)

    async def enqueue(
        self,
        session: AsyncSession,
        kind: MessageKind,
        patient_id: uuid.UUID,
        phone: str,
        **template_args: Any,
    ) -> NotificationRecord:
        """Write a pending notification in the caller's transaction"""
        if kind == MessageKind.GET_READY:
            template_args.setdefault("minutes", self.settings.queue.WAIT_MINUTES_PER_POSITION)

        record = NotificationRecord(
            patient_id=patient_id,
            phone=phone,
            kind=kind,
            message=render_message(kind, **template_args),
            status=NotificationStatus.PENDING,
            retry_count=0,
            next_attempt_at=utcnow(),
        )
        session.add(record)

        logger.debug("Notification queued", kind=kind.value, patient_id=str(patient_id))
        return record

    async def has_recent_notification(
        self,
        session: AsyncSession,
        patient_id: uuid.UUID,
        kind: MessageKind,
        within_minutes: int,
    ) -> bool:
        """Whether ``kind`` was already queued for the patient in the last ``within_minutes``"""
        cutoff = utcnow() - timedelta(minutes=within_minutes)
        result = await session.execute(
            select(func.count(NotificationRecord.id))
            .where(NotificationRecord.patient_id == patient_id)
            .where(NotificationRecord.kind == kind)
            .where(NotificationRecord.created_at >= cutoff)
            .where(NotificationRecord.status.notin_((NotificationStatus.CANCELLED, NotificationStatus.FAILED)))
        )
        return (result.scalar() or 0) > 0

    async def enqueue_get_ready(
        self,
        session: AsyncSession,
        patient_id: uuid.UUID,
        phone: str,
        name: str,
    ) -> Optional[NotificationRecord]:
        """Queue the "get ready" text unless one went out recently"""
        window = self.settings.notifications.GET_READY_DEDUP_MINUTES
        if await self.has_recent_notification(session, patient_id, MessageKind.GET_READY, window):
            logger.debug("Get-ready notification suppressed", patient_id=str(patient_id), window_minutes=window)
            return None
        return await self.enqueue(session, MessageKind.GET_READY, patient_id, phone, name=name)

    async def cancel_pending(self, session: AsyncSession, patient_id: uuid.UUID) -> int:
        """Cancel undelivered outbox rows for a patient who left the queue"""
        result = await session.execute(
            update(NotificationRecord)
            .where(NotificationRecord.patient_id == patient_id)
            .where(NotificationRecord.status == NotificationStatus.PENDING)
            .values(status=NotificationStatus.CANCELLED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        cancelled = result.rowcount or 0
        if cancelled:
            logger.info("Pending notifications cancelled", patient_id=str(patient_id), count=cancelled)
        return cancelled

    # Sending

    def _validate(self, phone: str, message: str) -> None:
        if len(message) > self.settings.notifications.MAX_MESSAGE_LENGTH:
            raise DeliveryError(
                f"Message too long. Maximum {self.settings.notifications.MAX_MESSAGE_LENGTH} characters allowed.",
                code="message_too_long",
            )
        if not is_valid_phone(phone):
            raise DeliveryError("Invalid phone number", code="invalid_phone_number")

    async def _attempt(self, record: NotificationRecord) -> bool:
        """
        One delivery attempt for an outbox row, updating it in place.

        Returns True when the row should be retried later.
        """
        now = utcnow()
        try:
            self._validate(record.phone, record.message)
            receipt = await self.transport.deliver(record.phone, record.message)
        except Exception as e:
            retryable = is_retryable_error(e)
            record.error_message = str(e)[:1000]
            record.updated_at = now

            if retryable and record.retry_count < self.policy.max_retries:
                delay_ms = calculate_retry_delay(record.retry_count, self.policy)
                record.retry_count += 1
                record.next_attempt_at = now + timedelta(milliseconds=delay_ms)
                logger.warning(
                    "SMS send failed, retry scheduled",
                    notification_id=str(record.id),
                    kind=record.kind.value,
                    attempt=record.retry_count,
                    delay_ms=round(delay_ms),
                    error=str(e),
                )
                return True

            record.status = NotificationStatus.FAILED
            record.failed_at = now
            logger.error(
                "SMS send failed permanently",
                notification_id=str(record.id),
                kind=record.kind.value,
                retries=record.retry_count,
                retryable=retryable,
                error=str(e),
            )
            return False

        record.status = (
            NotificationStatus.DELIVERED if receipt.status == "delivered" else NotificationStatus.SENT
        )
        record.external_id = receipt.external_id
        record.sent_at = now
        record.error_message = None
        record.updated_at = now
        logger.info(
            "SMS sent",
            notification_id=str(record.id),
            kind=record.kind.value,
            external_id=receipt.external_id,
            retries=record.retry_count,
        )
        return False

    async def _claim_due(self, limit: int) -> List[NotificationRecord]:
        """
        Lease due outbox rows in a short transaction.

        Pushing ``next_attempt_at`` past the lease hides the rows from other
        dispatchers while they are being sent; a dispatcher that dies mid-batch
        leaves them to be picked up again once the lease runs out.
        """
        lease = timedelta(seconds=self.settings.notifications.CLAIM_LEASE_SECONDS)

        async with self.db.get_async_session() as session:
            now = utcnow()
            query = (
                select(NotificationRecord)
                .where(NotificationRecord.status == NotificationStatus.PENDING)
                .where(NotificationRecord.next_attempt_at <= now)
                .order_by(NotificationRecord.next_attempt_at.asc(), NotificationRecord.created_at.asc())
                .limit(limit)
            )
            if self.db.dialect_name == "postgresql":
                query = query.with_for_update(skip_locked=True)

            result = await session.execute(query)
            records = list(result.scalars().all())
            for record in records:
                record.next_attempt_at = now + lease

        return records

    async def _save_outcome(self, record: NotificationRecord) -> None:
        """Write one attempt's outcome back to its outbox row"""
        delivered = record.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)

        async with self.db.get_async_session() as session:
            stored = await session.get(NotificationRecord, record.id)
            if stored is None:
                return
            # Cancelled while in flight; only a message that actually went out is recorded
            if stored.status != NotificationStatus.PENDING and not delivered:
                return
            for field in OUTCOME_FIELDS:
                setattr(stored, field, getattr(record, field))

    async def dispatch_pending(self, limit: Optional[int] = None) -> DispatchSummary:
        """
        Send every due outbox row, up to ``limit``.

        No database transaction is open while the transport is called, so
        queue operations never wait behind a slow SMS provider.
        """
        limit = limit or self.settings.notifications.WORKER_BATCH_SIZE
        summary = DispatchSummary()

        records = await self._claim_due(limit)

        for record in records:
            retry_later = await self._attempt(record)
            try:
                await self._save_outcome(record)
            except Exception as e:
                # The lease expires and the row is tried again
                logger.error(
                    "Failed to record notification outcome",
                    notification_id=str(record.id),
                    status=record.status.value,
                    error=str(e),
                )
                continue

            if retry_later:
                summary.retried += 1
            elif record.status == NotificationStatus.FAILED:
                summary.failed += 1
            else:
                summary.sent += 1

        if summary.processed:
            logger.info(
                "Outbox dispatched",
                sent=summary.sent,
                retried=summary.retried,
                failed=summary.failed,
            )
        return summary

    async def send(
        self,
        kind: MessageKind,
        phone: str,
        patient_id: uuid.UUID,
        **template_args: Any,
    ) -> DeliveryOutcome:
        """
        Send immediately, retrying in-line with backoff.

        Used for administrative re-sends; the attempt is recorded like an
        outbox row so it shows up in delivery statistics.
        """
        if kind == MessageKind.GET_READY:
            template_args.setdefault("minutes", self.settings.queue.WAIT_MINUTES_PER_POSITION)

        record = NotificationRecord(
            id=uuid.uuid4(),
            patient_id=patient_id,
            phone=phone,
            kind=kind,
            message=render_message(kind, **template_args),
            status=NotificationStatus.PENDING,
            retry_count=0,
            next_attempt_at=utcnow(),
        )

        while await self._attempt(record):
            delay = (record.next_attempt_at - utcnow()).total_seconds()
            await self._sleep(max(0.0, delay))

        async with self.db.get_async_session() as session:
            session.add(record)

        success = record.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)
        return DeliveryOutcome(
            success=success,
            status=record.status,
            notification_id=record.id,
            external_id=record.external_id,
            retry_count=record.retry_count,
            error=None if success else record.error_message,
        )

    # Delivery status bookkeeping

    async def get_pending_for_status_update(self, minutes: Optional[int] = None) -> List[NotificationRecord]:
        """Sent or pending rows with a transport id, created in the last ``minutes``"""
        minutes = minutes or self.settings.notifications.STATUS_POLL_WINDOW_MINUTES
        cutoff = utcnow() - timedelta(minutes=minutes)

        async with self.db.get_async_session() as session:
            result = await session.execute(
                select(NotificationRecord)
                .where(NotificationRecord.status.in_(UNDELIVERED_STATUSES))
                .where(NotificationRecord.external_id.is_not(None))
                .where(NotificationRecord.created_at >= cutoff)
                .order_by(NotificationRecord.created_at.asc())
            )
            return list(result.scalars().all())

    async def refresh_delivery_statuses(self, minutes: Optional[int] = None) -> int:
        """Poll the transport for recent messages and advance their status"""
        records = await self.get_pending_for_status_update(minutes)
        if not records:
            return 0

        updates: Dict[uuid.UUID, str] = {}
        for record in records:
            try:
                updates[record.id] = await self.transport.fetch_status(record.external_id)
            except Exception as e:
                logger.warning(
                    "Delivery status lookup failed",
                    notification_id=str(record.id),
                    external_id=record.external_id,
                    error=str(e),
                )

        changed = 0
        now = utcnow()
        async with self.db.get_async_session() as session:
            for record_id, transport_status in updates.items():
                record = await session.get(NotificationRecord, record_id)
                if record is None:
                    continue
                new_status = NotificationStatus(transport_status)
                if new_status == record.status or new_status == NotificationStatus.PENDING:
                    continue

                record.status = new_status
                record.updated_at = now
                if new_status == NotificationStatus.DELIVERED:
                    record.delivered_at = now
                elif new_status == NotificationStatus.FAILED:
                    record.failed_at = now
                changed += 1

        if changed:
            logger.info("Delivery statuses refreshed", checked=len(records), changed=changed)
        return changed

    async def get_delivery_stats(self, hours: int = 24) -> DeliveryStats:
        """Delivery counters for rows created in the last ``hours``"""
        cutoff = utcnow() - timedelta(hours=hours)

        async with self.db.get_async_session() as session:
            result = await session.execute(
                select(NotificationRecord.status, func.count(NotificationRecord.id))
                .where(NotificationRecord.created_at >= cutoff)
                .group_by(NotificationRecord.status)
            )
            counts = {NotificationStatus(status): count for status, count in result.all()}

        total = sum(counts.values())
        delivered = counts.get(NotificationStatus.DELIVERED, 0)
        failed = counts.get(NotificationStatus.FAILED, 0)

        return DeliveryStats(
            window_hours=hours,
            total=total,
            pending=counts.get(NotificationStatus.PENDING, 0),
            sent=counts.get(NotificationStatus.SENT, 0),
            delivered=delivered,
            failed=failed,
            cancelled=counts.get(NotificationStatus.CANCELLED, 0),
            delivery_rate=round(delivered / total * 100, 2) if total else 0.0,
            failure_rate=round(failed / total * 100, 2) if total else 0.0,
        )


async def delivery_worker(
    service: NotificationService,
    stop_event: asyncio.Event,
    poll_interval: Optional[float] = None,
) -> None:
    """
    Background loop that drains the outbox until ``stop_event`` is set.

    Delivery statuses are refreshed every few passes. Errors are logged and
    the loop carries on.
    """
    settings = service.settings.notifications
    poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL_SECONDS
    refresh_every = max(1, int(60 / poll_interval))
    passes = 0

    logger.info("Delivery worker started", poll_interval=poll_interval)
    while not stop_event.is_set():
        try:
            await service.dispatch_pending()
            passes += 1
            if passes % refresh_every == 0:
                await service.refresh_delivery_statuses()
        except Exception as e:
            logger.error("Delivery worker pass failed", error=str(e), exc_info=True)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Delivery worker stopped")
