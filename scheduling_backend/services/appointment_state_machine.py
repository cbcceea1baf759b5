"""Status transitions and timing policy for appointments.

Legal moves::

    scheduled -> confirmed | cancelled | no_show
    confirmed -> completed | cancelled | no_show

``cancelled``, ``completed`` and ``no_show`` are terminal. Cancel and
reschedule additionally require more than ``CANCELLATION_NOTICE_HOURS``
before the start. No-show is applied by an external process once the start
has passed; nothing here decides that an appointment was missed.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.appointment import Appointment, AppointmentStatus
from scheduling_backend.models.types import ensure_utc
from scheduling_backend.services.booking_coordinator import (
    booking_transaction,
    lock_appointment,
    lock_therapist,
    normalize_start,
    reserve_interval,
)
from scheduling_backend.services.errors import AccessDenied, NotFound, PolicyViolation

logger = logging.getLogger(__name__)

RESCHEDULE_REASON = 'Rescheduled to new time'

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def _utc_now(now: datetime | None) -> datetime:
    return ensure_utc(now) if now else datetime.now(timezone.utc)


def is_terminal(status: str) -> bool:
    return not TRANSITIONS[AppointmentStatus(status)]


def can_transition(current: str, target: str) -> bool:
    return AppointmentStatus(target) in TRANSITIONS[AppointmentStatus(current)]


def notice_window(notice_hours: int | None = None) -> timedelta:
    hours = config.CANCELLATION_NOTICE_HOURS if notice_hours is None else notice_hours
    return timedelta(hours=hours)


def is_cancellable(appointment: Appointment, now: datetime | None = None, notice_hours: int | None = None) -> bool:
    if is_terminal(appointment.status):
        return False
    return appointment.scheduled_at - _utc_now(now) > notice_window(notice_hours)


def is_reschedulable(appointment: Appointment, now: datetime | None = None, notice_hours: int | None = None) -> bool:
    return is_cancellable(appointment, now=now, notice_hours=notice_hours)


def apply_transition(appointment: Appointment, target: AppointmentStatus, now: datetime) -> Appointment:
    """Move ``appointment`` to ``target`` and stamp the matching timestamp. Does not commit."""
    if not can_transition(appointment.status, target.value):
        raise PolicyViolation(
            f'Cannot change appointment status from {appointment.status} to {target.value}.'
        )

    previous = appointment.status
    appointment.status = target.value
    if target is AppointmentStatus.CONFIRMED:
        appointment.confirmed_at = now
    elif target is AppointmentStatus.CANCELLED:
        appointment.cancelled_at = now

    logger.info('Appointment %s moved from %s to %s', appointment.id, previous, target.value)
    return appointment


def _lock_for_update(db: Session, appointment_id: uuid.UUID, session_id: str | None = None) -> Appointment:
    """Therapist lock first, then the appointment row, matching the booking lock order.

    When ``session_id`` is given the appointment must belong to that session.
    """
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.')
    lock_therapist(db, appointment.therapist_id)
    appointment = lock_appointment(db, appointment_id)
    if session_id is not None and appointment.session_id != session_id.strip():
        raise AccessDenied('Only the session that booked this appointment can change it.')
    return appointment


def get_appointment(db: Session, appointment_id: uuid.UUID) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.')
    return appointment


def cancel(
    db: Session,
    appointment_id: uuid.UUID,
    reason: str | None = None,
    now: datetime | None = None,
    session_id: str | None = None,
) -> Appointment:
    now = _utc_now(now)

    with booking_transaction(db):
        appointment = _lock_for_update(db, appointment_id, session_id)
        if not is_cancellable(appointment, now):
            raise PolicyViolation(
                f'Appointment cannot be cancelled (must be more than '
                f'{config.CANCELLATION_NOTICE_HOURS} hours in advance).'
            )
        apply_transition(appointment, AppointmentStatus.CANCELLED, now)
        appointment.cancellation_reason = (reason or '').strip() or None

    db.refresh(appointment)
    return appointment


def reschedule(
    db: Session,
    appointment_id: uuid.UUID,
    new_scheduled_at: datetime,
    now: datetime | None = None,
    session_id: str | None = None,
) -> Appointment:
    """Cancel the old appointment and book the new time in one transaction.

    If the new interval is taken the whole transaction rolls back and the
    original appointment is left exactly as it was.
    """
    now = _utc_now(now)

    with booking_transaction(db):
        original = _lock_for_update(db, appointment_id, session_id)
        if not is_reschedulable(original, now):
            raise PolicyViolation(
                f'Appointment cannot be rescheduled (must be more than '
                f'{config.CANCELLATION_NOTICE_HOURS} hours in advance).'
            )
        therapist = original.therapist
        new_start = normalize_start(new_scheduled_at, now)

        apply_transition(original, AppointmentStatus.CANCELLED, now)
        original.cancellation_reason = RESCHEDULE_REASON
        db.flush()

        replacement = reserve_interval(
            db,
            therapist,
            original.session_id,
            new_start,
            original.duration_minutes,
            location_type=original.location_type,
            virtual_link=original.virtual_link,
            exclude_id=original.id,
            rescheduled_from_id=original.id,
        )

    db.refresh(replacement)
    logger.info(
        'Rescheduled appointment %s to %s as %s',
        appointment_id,
        replacement.scheduled_at.isoformat(),
        replacement.id,
    )
    return replacement


def confirm(
    db: Session,
    appointment_id: uuid.UUID,
    now: datetime | None = None,
    session_id: str | None = None,
) -> Appointment:
    now = _utc_now(now)

    with booking_transaction(db):
        appointment = _lock_for_update(db, appointment_id, session_id)
        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise PolicyViolation('Only scheduled appointments can be confirmed.')
        apply_transition(appointment, AppointmentStatus.CONFIRMED, now)

    db.refresh(appointment)
    return appointment


def _require_started(appointment: Appointment, now: datetime, action: str) -> None:
    if appointment.scheduled_at > now:
        raise PolicyViolation(f'Appointment cannot be marked {action} before it starts.')


def complete(db: Session, appointment_id: uuid.UUID, now: datetime | None = None) -> Appointment:
    now = _utc_now(now)

    with booking_transaction(db):
        appointment = _lock_for_update(db, appointment_id)
        _require_started(appointment, now, 'completed')
        apply_transition(appointment, AppointmentStatus.COMPLETED, now)

    db.refresh(appointment)
    return appointment


def mark_no_show(db: Session, appointment_id: uuid.UUID, now: datetime | None = None) -> Appointment:
    now = _utc_now(now)

    with booking_transaction(db):
        appointment = _lock_for_update(db, appointment_id)
        _require_started(appointment, now, 'no-show')
        apply_transition(appointment, AppointmentStatus.NO_SHOW, now)

    db.refresh(appointment)
    return appointment
