"""Availability model definitions."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, Date, ForeignKey, Index, Integer, String, Time, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from scheduling_backend.database import Base
from scheduling_backend.models.therapist import Therapist
from scheduling_backend.models.types import UTCDateTime


class TherapistAvailability(Base):
    """A recurring weekly window, anchored in its own timezone."""
    __tablename__ = "therapist_availabilities"
    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="check_day_of_week"),
        Index("idx_availabilities_therapist_day", "therapist_id", "day_of_week"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id = Column(Uuid, ForeignKey("therapists.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday ... 6 = Saturday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    timezone = Column(String, nullable=False)
    is_repeating = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    therapist = relationship(Therapist)


class TherapistTimeOff(Base):
    """Whole days (inclusive) on which the therapist takes no appointments."""
    __tablename__ = "therapist_time_offs"
    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="check_time_off_date_order"),
        Index("idx_time_offs_therapist_range", "therapist_id", "start_date", "end_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id = Column(Uuid, ForeignKey("therapists.id"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    reason = Column(String, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())

    therapist = relationship(Therapist)
