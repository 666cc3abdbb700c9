from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smartwait.models.queue import QueueStatus
from smartwait.utils.phone import is_valid_phone_input


class CheckInRequest(BaseModel):
    """Check-in form as submitted by the patient"""

    name: str = Field(..., min_length=1, max_length=100, description="Patient name")
    phone: str = Field(..., min_length=10, max_length=20, description="Mobile number for SMS updates")
    appointment_time: str = Field(
        ..., min_length=1, max_length=50, alias="appointmentTime", description="Appointment time as entered"
    )

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not is_valid_phone_input(v):
            raise ValueError("Invalid phone number format")
        return v


class CheckInResult(BaseModel):
    patient_id: UUID
    position: int
    estimated_wait_minutes: int


class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str


class QueueEntryView(BaseModel):
    """One row of the staff queue view"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    position: int
    status: QueueStatus
    estimated_wait_minutes: int
    appointment_time: str
    check_in_time: datetime
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    patient: Optional[PatientSummary] = None


class QueueStatusView(BaseModel):
    """What a patient sees when looking up their place in line"""

    patient_id: UUID
    position: int
    status: QueueStatus
    estimated_wait_minutes: int
    total_in_queue: int
    check_in_time: datetime
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CallNextResult(BaseModel):
    success: bool
    message: str
    patient: Optional[QueueEntryView] = None


class PatientActionRequest(BaseModel):
    patient_id: UUID = Field(..., alias="patientId")

    model_config = ConfigDict(populate_by_name=True)


class QueueStats(BaseModel):
    waiting_count: int
    called_count: int
    completed_count: int
    average_wait_minutes: int
    longest_wait_minutes: int
    window_hours: int
