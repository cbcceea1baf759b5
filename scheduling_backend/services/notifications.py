"""Collaborators that run after a booking transaction has committed.

Routes schedule these with FastAPI ``BackgroundTasks`` so they never execute
while the therapist lock is held. Delivery (email, internal messaging, audit
storage) belongs to other services; here the payloads are assembled and
logged.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from scheduling_backend.core import config
from scheduling_backend.database import SessionLocal
from scheduling_backend.models.appointment import Appointment

logger = logging.getLogger(__name__)

THERAPIST_NOTIFIED = 'THERAPIST_NOTIFIED'
PARENT_CONFIRMATION_SENT = 'PARENT_CONFIRMATION_SENT'
APPOINTMENT_BOOKED = 'APPOINTMENT_BOOKED'
APPOINTMENT_CANCELLED = 'APPOINTMENT_CANCELLED'
APPOINTMENT_RESCHEDULED = 'APPOINTMENT_RESCHEDULED'
APPOINTMENT_STATUS_CHANGED = 'APPOINTMENT_STATUS_CHANGED'


def _load_appointment(db: Session, appointment_id: uuid.UUID, job_name: str) -> Appointment | None:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        logger.warning('%s: appointment not found: %s', job_name, appointment_id)
    return appointment


def build_therapist_notification(appointment: Appointment) -> dict:
    therapist = appointment.therapist
    return {
        'therapist_email': therapist.email,
        'therapist_name': therapist.full_name,
        'appointment_time': appointment.scheduled_at.isoformat(),
        'duration': appointment.duration_minutes,
        'session_id': appointment.session_id,
        'confirmation_number': appointment.confirmation_number,
        'virtual_link': appointment.virtual_link,
    }


def build_parent_confirmation(appointment: Appointment) -> dict:
    therapist = appointment.therapist
    return {
        'session_id': appointment.session_id,
        'therapist_name': therapist.full_name,
        'appointment_time': appointment.scheduled_at.isoformat(),
        'duration': appointment.duration_minutes,
        'location_type': appointment.location_type,
        'virtual_link': appointment.virtual_link,
        'confirmation_number': appointment.confirmation_number,
        'cancellation_policy': f'{config.CANCELLATION_NOTICE_HOURS} hours notice required',
    }


def notify_therapist_of_booking(appointment_id: uuid.UUID, session_factory: sessionmaker = SessionLocal) -> dict | None:
    db = session_factory()
    try:
        appointment = _load_appointment(db, appointment_id, 'notify_therapist_of_booking')
        if appointment is None:
            return None

        details = build_therapist_notification(appointment)
        logger.info('Therapist booking notification: %s', details)
        record_audit_event(
            THERAPIST_NOTIFIED,
            appointment_id,
            {'therapist_id': str(appointment.therapist_id)},
        )
        return details
    finally:
        db.close()


def send_appointment_confirmation(appointment_id: uuid.UUID, session_factory: sessionmaker = SessionLocal) -> dict | None:
    db = session_factory()
    try:
        appointment = _load_appointment(db, appointment_id, 'send_appointment_confirmation')
        if appointment is None:
            return None

        details = build_parent_confirmation(appointment)
        logger.info('Parent confirmation details: %s', details)
        record_audit_event(
            PARENT_CONFIRMATION_SENT,
            appointment_id,
            {'session_id': appointment.session_id},
        )
        return details
    finally:
        db.close()


def record_audit_event(action: str, appointment_id: uuid.UUID, details: dict | None = None) -> dict:
    entry = {
        'action': action,
        'resource': 'Appointment',
        'resource_id': str(appointment_id),
        'details': details or {},
        'recorded_at': datetime.now(timezone.utc).isoformat(),
    }
    logger.info('Audit event: %s', entry)
    return entry
