import logging
import uuid
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import require_admin
from scheduling_backend.database import get_db
from scheduling_backend.models.types import ensure_utc
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import database_unavailable, ensure_database_ready, to_http_exception
from scheduling_backend.services import appointment_state_machine, booking_coordinator, notifications
from scheduling_backend.services.errors import SchedulingError

router = APIRouter(tags=['appointments'])

logger = logging.getLogger(__name__)

MAX_CANCELLATION_REASON_LENGTH = 500


class SessionScopedRequest(BaseModel):
    """Requests made on behalf of one intake session."""
    session_id: str

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Session id is required.')
        return normalized


class BookAppointmentRequest(SessionScopedRequest):
    therapist_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int | None = Field(default=None, gt=0)

    @field_validator('scheduled_at')
    @classmethod
    def normalize_scheduled_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class CancelAppointmentRequest(SessionScopedRequest):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_CANCELLATION_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_CANCELLATION_REASON_LENGTH} characters or fewer.')

        return normalized


class ConfirmAppointmentRequest(SessionScopedRequest):
    pass


class RescheduleAppointmentRequest(SessionScopedRequest):
    new_scheduled_at: datetime

    @field_validator('new_scheduled_at')
    @classmethod
    def normalize_new_scheduled_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AppointmentResponse(BaseModel):
    id: uuid.UUID
    therapist_id: uuid.UUID
    session_id: str
    scheduled_at: datetime
    ends_at: datetime
    duration_minutes: int
    status: str
    confirmation_number: str
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    location_type: str
    virtual_link: str | None = None
    rescheduled_from_id: uuid.UUID | None = None

    class Config:
        from_attributes = True


def _call_service(db: Session, operation, *args, **kwargs):
    ensure_database_ready()

    try:
        return operation(db, *args, **kwargs)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: BookAppointmentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    appointment = _call_service(
        db,
        booking_coordinator.book,
        data.therapist_id,
        data.session_id,
        data.scheduled_at,
        data.duration_minutes,
    )

    background_tasks.add_task(notifications.notify_therapist_of_booking, appointment.id)
    background_tasks.add_task(notifications.send_appointment_confirmation, appointment.id)
    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_BOOKED,
        appointment.id,
        {'therapist_id': str(appointment.therapist_id), 'session_id': appointment.session_id},
    )

    return appointment


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(appointment_id: uuid.UUID, db: Session = Depends(get_db)):
    return _call_service(db, appointment_state_machine.get_appointment, appointment_id)


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: uuid.UUID,
    data: CancelAppointmentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    appointment = _call_service(
        db,
        appointment_state_machine.cancel,
        appointment_id,
        data.reason,
        session_id=data.session_id,
    )

    logger.info('Appointment cancelled: %s', appointment_id)
    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_CANCELLED,
        appointment.id,
        {'reason': appointment.cancellation_reason},
    )
    return appointment


@router.post(
    '/{appointment_id}/reschedule',
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def reschedule_appointment(
    appointment_id: uuid.UUID,
    data: RescheduleAppointmentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    appointment = _call_service(
        db,
        appointment_state_machine.reschedule,
        appointment_id,
        data.new_scheduled_at,
        session_id=data.session_id,
    )

    background_tasks.add_task(notifications.notify_therapist_of_booking, appointment.id)
    background_tasks.add_task(notifications.send_appointment_confirmation, appointment.id)
    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_RESCHEDULED,
        appointment.id,
        {'rescheduled_from_id': str(appointment_id)},
    )
    return appointment


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: uuid.UUID,
    data: ConfirmAppointmentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    appointment = _call_service(
        db,
        appointment_state_machine.confirm,
        appointment_id,
        session_id=data.session_id,
    )

    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_STATUS_CHANGED,
        appointment.id,
        {'status': appointment.status},
    )
    return appointment


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    appointment = _call_service(db, appointment_state_machine.complete, appointment_id)

    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_STATUS_CHANGED,
        appointment.id,
        {'status': appointment.status, 'changed_by': current_user.email},
    )
    return appointment


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_appointment_no_show(
    appointment_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    appointment = _call_service(db, appointment_state_machine.mark_no_show, appointment_id)

    background_tasks.add_task(
        notifications.record_audit_event,
        notifications.APPOINTMENT_STATUS_CHANGED,
        appointment.id,
        {'status': appointment.status, 'changed_by': current_user.email},
    )
    return appointment
