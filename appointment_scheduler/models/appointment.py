from sqlalchemy import Column, String, DateTime, Text, Enum as SQLEnum, Index
from sqlalchemy.sql import func
import enum
import uuid

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_scheduler_schedule", "scheduler_id", "date", "time"),
        Index("ix_appointments_counterparty_schedule", "counterparty_id", "date", "time"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Parties. Plain ids, the users table is read only for display names.
    scheduler_id = Column(String(36), nullable=False)
    counterparty_id = Column(String(36), nullable=False)

    # Appointment details
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    time = Column(String(8), nullable=False)  # HH:MM[:SS]
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    audio_url = Column(String(1024), nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Appointment(id={self.id}, scheduler_id={self.scheduler_id}, counterparty_id={self.counterparty_id}, date='{self.date} {self.time}')>"
