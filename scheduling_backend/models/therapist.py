"""Therapist model definitions."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, Integer, String, Uuid
from sqlalchemy.sql import func

from scheduling_backend.core import config
from scheduling_backend.database import Base
from scheduling_backend.models.types import UTCDateTime


class Therapist(Base):
    """The scheduling-relevant slice of a therapist record."""
    __tablename__ = "therapists"
    __table_args__ = (
        CheckConstraint("appointment_duration_minutes > 0", name="check_appointment_duration_positive"),
        CheckConstraint("buffer_time_minutes >= 0", name="check_buffer_time_not_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    appointment_duration_minutes = Column(
        Integer, nullable=False, default=config.DEFAULT_APPOINTMENT_DURATION_MINUTES
    )
    buffer_time_minutes = Column(Integer, nullable=False, default=config.DEFAULT_BUFFER_TIME_MINUTES)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def total_slot_duration(self) -> int:
        """Minutes between consecutive slot starts: the session plus its buffer."""
        return self.appointment_duration_minutes + self.buffer_time_minutes
