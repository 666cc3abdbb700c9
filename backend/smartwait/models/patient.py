import uuid

from sqlalchemy import Column, String, DateTime, Index, Uuid
from sqlalchemy.orm import relationship

from smartwait.core.database import Base
from smartwait.utils.clock import utcnow


class Patient(Base):
    """Person who checked in; created once per check-in and never mutated"""

    __tablename__ = "patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)  # normalized E.164
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    queue_entries = relationship("QueueEntry", back_populates="patient")
    notifications = relationship("NotificationRecord", back_populates="patient")

    __table_args__ = (
        Index("idx_patient_phone", "phone"),
    )

    def __repr__(self):
        return f"<Patient(id='{self.id}', name='{self.name}')>"
