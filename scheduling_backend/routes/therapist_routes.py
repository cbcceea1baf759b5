import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import require_admin
from scheduling_backend.core import config
from scheduling_backend.database import get_db
from scheduling_backend.models.therapist import Therapist
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['therapists'])


class CreateTherapistRequest(BaseModel):
    first_name: str
    last_name: str
    email: str | None = None
    appointment_duration_minutes: int = Field(default=config.DEFAULT_APPOINTMENT_DURATION_MINUTES, gt=0)
    buffer_time_minutes: int = Field(default=config.DEFAULT_BUFFER_TIME_MINUTES, ge=0)

    @field_validator('first_name', 'last_name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().lower() or None


class TherapistResponse(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: str | None = None
    active: bool
    appointment_duration_minutes: int
    buffer_time_minutes: int
    total_slot_duration: int

    class Config:
        from_attributes = True


@router.post('', response_model=TherapistResponse, status_code=status.HTTP_201_CREATED)
def create_therapist(
    data: CreateTherapistRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    ensure_database_ready()

    try:
        therapist = Therapist(
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            appointment_duration_minutes=data.appointment_duration_minutes,
            buffer_time_minutes=data.buffer_time_minutes,
        )
        db.add(therapist)
        db.commit()
        db.refresh(therapist)

        return therapist
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{therapist_id}', response_model=TherapistResponse)
def get_therapist(therapist_id: uuid.UUID, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapist = db.get(Therapist, therapist_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if therapist is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Therapist not found.',
        )
    return therapist
