import uuid
from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import require_admin
from scheduling_backend.database import get_db
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import database_unavailable, ensure_database_ready, to_http_exception
from scheduling_backend.services import availability_catalog, slot_generator
from scheduling_backend.services.errors import SchedulingError

router = APIRouter(tags=['availability'])

DEFAULT_OUTPUT_TIMEZONE = 'UTC'
MAX_TIME_OFF_REASON_LENGTH = 255


def _strip_timezone(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        raise ValueError('Timezone is required.')
    return normalized


class CreateAvailabilityRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    timezone: str
    is_repeating: bool = True

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _strip_timezone(value)


class UpdateAvailabilityRequest(BaseModel):
    day_of_week: int | None = None
    start_time: time | None = None
    end_time: time | None = None
    timezone: str | None = None
    is_repeating: bool | None = None

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        return _strip_timezone(value)


class AvailabilityResponse(BaseModel):
    id: uuid.UUID
    therapist_id: uuid.UUID
    day_of_week: int
    start_time: time
    end_time: time
    timezone: str
    is_repeating: bool

    class Config:
        from_attributes = True


class CreateTimeOffRequest(BaseModel):
    start_date: date
    end_date: date
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_TIME_OFF_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_TIME_OFF_REASON_LENGTH} characters or fewer.')

        return normalized


class TimeOffResponse(BaseModel):
    id: uuid.UUID
    therapist_id: uuid.UUID
    start_date: date
    end_date: date
    reason: str | None = None

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    therapist_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    duration_minutes: int


@router.get('/therapists/{therapist_id}/windows', response_model=list[AvailabilityResponse])
def list_availability_windows(therapist_id: uuid.UUID, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return availability_catalog.list_windows(db, therapist_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post(
    '/therapists/{therapist_id}/windows',
    response_model=AvailabilityResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_availability_window(
    therapist_id: uuid.UUID,
    data: CreateAvailabilityRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        return availability_catalog.create_window(
            db,
            therapist_id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            timezone_name=data.timezone,
            is_repeating=data.is_repeating,
        )
    except SchedulingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/windows/{window_id}', response_model=AvailabilityResponse)
def update_availability_window(
    window_id: uuid.UUID,
    data: UpdateAvailabilityRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        return availability_catalog.update_window(db, window_id, **data.model_dump(exclude_none=True))
    except SchedulingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/windows/{window_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_window(
    window_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        availability_catalog.delete_window(db, window_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/therapists/{therapist_id}/time-off', response_model=list[TimeOffResponse])
def list_time_off(therapist_id: uuid.UUID, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return availability_catalog.list_time_off(db, therapist_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post(
    '/therapists/{therapist_id}/time-off',
    response_model=TimeOffResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_time_off(
    therapist_id: uuid.UUID,
    data: CreateTimeOffRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        return availability_catalog.create_time_off(
            db,
            therapist_id,
            start_date=data.start_date,
            end_date=data.end_date,
            reason=data.reason,
        )
    except SchedulingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/time-off/{time_off_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_time_off(
    time_off_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        availability_catalog.delete_time_off(db, time_off_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/therapists/{therapist_id}/slots', response_model=list[SlotResponse])
def list_available_slots(
    therapist_id: uuid.UUID,
    start_date: date = Query(...),
    end_date: date = Query(...),
    timezone: str = Query(default=DEFAULT_OUTPUT_TIMEZONE),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        slots = slot_generator.compute_available_slots(db, therapist_id, start_date, end_date, timezone)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    finally:
        # Read-only: end the transaction instead of holding it until the session closes.
        db.rollback()

    return [
        SlotResponse(
            therapist_id=slot.therapist_id,
            start_time=slot.start,
            end_time=slot.end,
            duration_minutes=slot.duration_minutes,
        )
        for slot in slots
    ]
