from smartwait.models.patient import Patient
from smartwait.models.queue import (
    QueueEntry,
    QueueStatus,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ALLOWED_TRANSITIONS,
    can_transition,
    is_active_status,
)
from smartwait.models.notification import (
    NotificationRecord,
    NotificationStatus,
    MessageKind,
)

# Base model for all tables
from smartwait.core.database import Base

__all__ = [
    "Base",
    "Patient",
    "QueueEntry",
    "QueueStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "is_active_status",
    "NotificationRecord",
    "NotificationStatus",
    "MessageKind",
]
