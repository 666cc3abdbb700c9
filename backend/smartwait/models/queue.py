"""
Queue entry model and its status state machine.

Active entries (waiting or called) hold unique positions; the partial unique
index on ``position`` is the cross-transaction guard for that rule. Terminal
entries (completed, no_show) keep their last position for history and are
never renumbered.
"""

from typing import Dict, FrozenSet, Optional
import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Index,
    CheckConstraint,
    Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import text

from smartwait.core.database import Base
from smartwait.core.exceptions import InvalidTransitionError
from smartwait.utils.clock import utcnow


class QueueStatus(str, enum.Enum):
    """Queue entry status"""
    WAITING = "waiting"
    CALLED = "called"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


ACTIVE_STATUSES: FrozenSet[QueueStatus] = frozenset({QueueStatus.WAITING, QueueStatus.CALLED})

TERMINAL_STATUSES: FrozenSet[QueueStatus] = frozenset({QueueStatus.COMPLETED, QueueStatus.NO_SHOW})

# Completing a waiting patient without calling them first is allowed
ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.WAITING: frozenset({QueueStatus.CALLED, QueueStatus.COMPLETED, QueueStatus.NO_SHOW}),
    QueueStatus.CALLED: frozenset({QueueStatus.COMPLETED, QueueStatus.NO_SHOW}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.NO_SHOW: frozenset(),
}

_ACTIVE_SQL = "status IN ('waiting', 'called')"


def can_transition(current: Optional[QueueStatus], target: QueueStatus) -> bool:
    """Whether ``current -> target`` is a legal status change; new entries start as waiting"""
    target = QueueStatus(target)
    if current is None:
        return target == QueueStatus.WAITING
    return target in ALLOWED_TRANSITIONS[QueueStatus(current)]


def is_active_status(status: Optional[QueueStatus]) -> bool:
    return status is not None and QueueStatus(status) in ACTIVE_STATUSES


class QueueEntry(Base):
    """One patient's place in the waiting line"""

    __tablename__ = "queue_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False)

    position = Column(Integer, nullable=False)
    status = Column(
        SQLEnum(
            QueueStatus,
            name="queue_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    estimated_wait_minutes = Column(Integer, nullable=False, default=0)
    appointment_time = Column(String(50), nullable=False)

    check_in_time = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    called_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    # Relationships
    patient = relationship("Patient", back_populates="queue_entries", lazy="joined", innerjoin=True)

    __table_args__ = (
        CheckConstraint("position > 0", name="check_position_positive"),
        CheckConstraint("estimated_wait_minutes >= 0", name="check_wait_non_negative"),
        Index(
            "uq_queue_active_position",
            "position",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
        Index("idx_queue_status_position", "status", "position"),
        Index("idx_queue_patient_check_in", "patient_id", "check_in_time"),
    )

    @validates("status")
    def validate_status(self, key, status):
        """Reject any status write the state machine does not allow"""
        target = QueueStatus(status)
        current = QueueStatus(self.status) if self.status is not None else None
        if not can_transition(current, target):
            raise InvalidTransitionError(
                current.value if current is not None else None,
                target.value,
            )
        return target

    @property
    def is_active(self) -> bool:
        return is_active_status(self.status)

    def __repr__(self):
        return f"<QueueEntry(id='{self.id}', position={self.position}, status='{self.status}')>"
