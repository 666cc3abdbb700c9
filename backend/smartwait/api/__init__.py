from smartwait.api.routes import queue, staff, health
from smartwait.api.dependencies import (
    get_correlation_id,
    get_queue_service,
    get_notification_service,
)

# API route modules
__all__ = [
    "queue",
    "staff",
    "health",
    "get_correlation_id",
    "get_queue_service",
    "get_notification_service",
]
