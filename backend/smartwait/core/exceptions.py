"""
Queue and delivery error taxonomy.

Queue errors surface synchronously to callers of the queue service and are
translated into JSON error bodies by the API layer. Delivery errors never
leave the notification layer.
"""

from typing import Any, Dict, Optional


class QueueError(Exception):
    """Base class for errors surfaced by queue operations"""

    code = "QUEUE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(QueueError):
    """Malformed name, phone or appointment text"""

    code = "VALIDATION_ERROR"
    status_code = 400


class DuplicateActiveEntry(QueueError):
    """The phone number already owns an active queue entry"""

    code = "DUPLICATE_ACTIVE_ENTRY"
    status_code = 409

    def __init__(self, message: str = "Patient with this phone number is already in the queue", **kwargs):
        super().__init__(message, **kwargs)


class PatientNotFoundError(QueueError):
    code = "PATIENT_NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Patient not found in queue", **kwargs):
        super().__init__(message, **kwargs)


class StoreConflictError(QueueError):
    """Unique-constraint violation while writing the active set"""

    code = "STORE_CONFLICT"
    status_code = 409

    def __init__(self, message: str = "Queue position conflict, please retry", **kwargs):
        super().__init__(message, **kwargs)


class InvalidTransitionError(QueueError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: Optional[str], requested: str):
        super().__init__(
            f"Illegal queue status transition: {current} -> {requested}",
            details={"from": current, "to": requested},
        )
        self.current = current
        self.requested = requested


class DeliveryError(Exception):
    """Notification delivery failure; logged and recorded, never propagated to queue callers"""

    def __init__(self, message: str, retryable: bool = False, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.code = code


class TransportError(DeliveryError):
    """Error reported by the SMS transport"""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, retryable=retryable, code=code)
        self.status_code = status_code


__all__ = [
    "QueueError",
    "ValidationError",
    "DuplicateActiveEntry",
    "PatientNotFoundError",
    "StoreConflictError",
    "InvalidTransitionError",
    "DeliveryError",
    "TransportError",
]
