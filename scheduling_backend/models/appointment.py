"""Appointment model definitions."""

import enum
import uuid

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from scheduling_backend.database import Base
from scheduling_backend.models.therapist import Therapist
from scheduling_backend.models.types import UTCDateTime


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class LocationType(str, enum.Enum):
    VIRTUAL = "virtual"
    IN_PERSON = "in_person"


ACTIVE_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value)

_ACTIVE_STATUS_CLAUSE = text("status IN ('scheduled', 'confirmed')")


class Appointment(Base):
    """A committed booking. Cancelled rows are kept for history."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        Index(
            "uq_appointments_active_therapist_start",
            "therapist_id",
            "scheduled_at",
            unique=True,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
        ),
        Index("idx_appointments_therapist_range", "therapist_id", "scheduled_at", "ends_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id = Column(Uuid, ForeignKey("therapists.id"), nullable=False)
    session_id = Column(String, nullable=False, index=True)

    scheduled_at = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)

    status = Column(String, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    confirmation_number = Column(String(12), nullable=False)
    confirmed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    location_type = Column(String, nullable=False, default=LocationType.VIRTUAL.value)
    virtual_link = Column(String, nullable=True)
    rescheduled_from_id = Column(Uuid, ForeignKey("appointments.id"), nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    therapist = relationship(Therapist)
