from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from smartwait.models.notification import MessageKind, NotificationStatus


class DeliveryOutcome(BaseModel):
    """Result of one immediate send, including in-line retries"""

    success: bool
    status: NotificationStatus
    notification_id: Optional[UUID] = None
    external_id: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None


class DeliveryStats(BaseModel):
    """Delivery counters over a time window; rates are percentages"""

    window_hours: int
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0
    delivery_rate: float = Field(0.0, ge=0, le=100)
    failure_rate: float = Field(0.0, ge=0, le=100)


class ResendRequest(BaseModel):
    patient_id: UUID = Field(..., alias="patientId", description="Patient to re-notify")
    kind: MessageKind = Field(MessageKind.FOLLOW_UP, description="Template to send")

    model_config = ConfigDict(populate_by_name=True)
