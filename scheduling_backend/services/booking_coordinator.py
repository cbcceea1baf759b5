"""Transactional write path for appointments.

Every calendar mutation runs inside ``booking_transaction`` and takes the
therapist row lock (``lock_therapist``) before reading the calendar, so two
writers for the same therapist never interleave their re-check and insert.
The partial unique index on ``(therapist_id, scheduled_at)`` catches anything
that slips through weaker isolation; its violation is reported the same way
as an overlap found by the re-check.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.database import begin_write
from scheduling_backend.models.appointment import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    LocationType,
)
from scheduling_backend.models.therapist import Therapist
from scheduling_backend.models.types import ensure_utc
from scheduling_backend.services.errors import NotFound, SlotUnavailable, ValidationError

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = 'This time slot is no longer available. Refresh availability and choose another slot.'


@contextmanager
def booking_transaction(db: Session) -> Iterator[Session]:
    """Open a write transaction; commit on success, roll back on any exception.

    A constraint violation means another writer took the interval first and
    is re-raised as ``SlotUnavailable``.
    """
    try:
        begin_write(db)
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning('Booking constraint violated, treating as slot unavailable: %s', exc.orig)
        raise SlotUnavailable(SLOT_TAKEN_MESSAGE) from exc
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Booking transaction failed')
        raise
    except BaseException:
        db.rollback()
        raise


def lock_therapist(db: Session, therapist_id: uuid.UUID) -> Therapist:
    therapist = db.query(Therapist).filter(
        Therapist.id == therapist_id,
    ).with_for_update().populate_existing().one_or_none()

    if therapist is None:
        raise NotFound('Therapist not found.')
    return therapist


def lock_appointment(db: Session, appointment_id: uuid.UUID) -> Appointment:
    appointment = db.query(Appointment).filter(
        Appointment.id == appointment_id,
    ).with_for_update().populate_existing().one_or_none()

    if appointment is None:
        raise NotFound('Appointment not found.')
    return appointment


def derive_confirmation_number(appointment_id: uuid.UUID) -> str:
    return f'APT-{appointment_id.hex[:8].upper()}'


def build_virtual_link(session_id: str) -> str:
    return f'{config.VIRTUAL_LINK_BASE_URL}/session-{session_id}'


def find_conflicting_appointment(
    db: Session,
    therapist_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_id: uuid.UUID | None = None,
) -> Appointment | None:
    # [start, end) overlaps [scheduled_at, ends_at) iff scheduled_at < end AND start < ends_at
    query = db.query(Appointment).filter(
        Appointment.therapist_id == therapist_id,
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.scheduled_at < end,
        Appointment.ends_at > start,
    )
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)
    return query.first()


def normalize_start(scheduled_at: datetime, now: datetime) -> datetime:
    if scheduled_at is None:
        raise ValidationError('Scheduled time is required.')
    scheduled_at = ensure_utc(scheduled_at)
    if scheduled_at <= now:
        raise ValidationError('Appointment must be scheduled in the future.')
    return scheduled_at


def resolve_duration(therapist: Therapist, duration_minutes: int | None) -> int:
    duration = therapist.appointment_duration_minutes if duration_minutes is None else duration_minutes
    if duration <= 0:
        raise ValidationError('Duration must be greater than zero.')
    if duration > config.MAX_APPOINTMENT_DURATION_MINUTES:
        raise ValidationError(
            f'Duration cannot exceed {config.MAX_APPOINTMENT_DURATION_MINUTES} minutes.'
        )
    return duration


def reserve_interval(
    db: Session,
    therapist: Therapist,
    session_id: str,
    scheduled_at: datetime,
    duration_minutes: int,
    location_type: str = LocationType.VIRTUAL.value,
    virtual_link: str | None = None,
    exclude_id: uuid.UUID | None = None,
    rescheduled_from_id: uuid.UUID | None = None,
) -> Appointment:
    """Re-check and insert inside the caller's locked transaction. Does not commit."""
    ends_at = scheduled_at + timedelta(minutes=duration_minutes)

    conflict = find_conflicting_appointment(db, therapist.id, scheduled_at, ends_at, exclude_id=exclude_id)
    if conflict is not None:
        logger.warning(
            'Slot %s for therapist %s conflicts with appointment %s',
            scheduled_at.isoformat(),
            therapist.id,
            conflict.id,
        )
        raise SlotUnavailable(SLOT_TAKEN_MESSAGE)

    appointment_id = uuid.uuid4()
    appointment = Appointment(
        id=appointment_id,
        therapist_id=therapist.id,
        session_id=session_id,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        ends_at=ends_at,
        status=AppointmentStatus.SCHEDULED.value,
        confirmation_number=derive_confirmation_number(appointment_id),
        location_type=location_type,
        virtual_link=virtual_link if virtual_link is not None else build_virtual_link(session_id),
        rescheduled_from_id=rescheduled_from_id,
    )
    db.add(appointment)
    db.flush()
    return appointment


def book(
    db: Session,
    therapist_id: uuid.UUID,
    session_id: str,
    scheduled_at: datetime,
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    session_id = (session_id or '').strip()
    if not session_id:
        raise ValidationError('Session id is required.')

    with booking_transaction(db):
        therapist = lock_therapist(db, therapist_id)
        if not therapist.active:
            raise ValidationError('Therapist is not active.')

        start = normalize_start(scheduled_at, now)
        duration = resolve_duration(therapist, duration_minutes)
        appointment = reserve_interval(db, therapist, session_id, start, duration)

    db.refresh(appointment)
    logger.info(
        'Booked appointment %s (%s) for therapist %s at %s',
        appointment.id,
        appointment.confirmation_number,
        therapist_id,
        appointment.scheduled_at.isoformat(),
    )
    return appointment
