import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Text,
    DateTime,
    ForeignKey,
    Index,
    Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from smartwait.core.database import Base
from smartwait.utils.clock import utcnow


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class MessageKind(str, enum.Enum):
    """Notification template kinds"""
    CHECK_IN_CONFIRMATION = "check_in_confirmation"
    GET_READY = "get_ready"
    CALL_NOW = "call_now"
    FOLLOW_UP = "follow_up"


class NotificationStatus(str, enum.Enum):
    """Delivery status of an outbound message"""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NotificationRecord(Base):
    """Outbox row for one SMS; retries update the same row"""

    __tablename__ = "notification_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False)

    phone = Column(String(20), nullable=False)
    kind = Column(SQLEnum(MessageKind, name="message_kind", values_callable=_enum_values), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(
        SQLEnum(NotificationStatus, name="notification_status", values_callable=_enum_values),
        nullable=False,
        default=NotificationStatus.PENDING,
    )

    external_id = Column(String(100))  # transport message id
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    next_attempt_at = Column(DateTime(timezone=True), default=utcnow)

    # Tracking
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    patient = relationship("Patient", back_populates="notifications")

    __table_args__ = (
        Index("idx_notification_due", "status", "next_attempt_at"),
        Index("idx_notification_patient_kind", "patient_id", "kind", "created_at"),
        Index("idx_notification_external_id", "external_id"),
    )

    def __repr__(self):
        return f"<NotificationRecord(id='{self.id}', kind='{self.kind}', status='{self.status}')>"
