"""Turns recurring windows and time-off into concrete bookable slots.

``generate_slots`` is a pure function over already-loaded rows;
``compute_available_slots`` loads those rows for one therapist and calls it.
Every boundary is computed as an absolute instant, so a window that spans a
daylight-saving change still yields slots of exactly ``slot_minutes``.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Mapping, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.appointment import ACTIVE_STATUSES, Appointment
from scheduling_backend.models.availability import TherapistAvailability, TherapistTimeOff
from scheduling_backend.services.availability_catalog import (
    anchor_times,
    covers_date,
    day_of_week,
    get_therapist,
    intervals_overlap,
    repeating_windows_by_day,
    resolve_timezone,
    time_off_for,
)
from scheduling_backend.services.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    therapist_id: uuid.UUID

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def iterate_dates(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def window_bounds(window: TherapistAvailability, on_date: date) -> tuple[datetime, datetime]:
    """Anchor a window's wall-clock times on ``on_date`` in its own timezone, as UTC instants."""
    return anchor_times(window.start_time, window.end_time, resolve_timezone(window.timezone), on_date)


def split_window(start: datetime, end: datetime, slot_minutes: int) -> list[tuple[datetime, datetime]]:
    step = timedelta(minutes=slot_minutes)
    slots: list[tuple[datetime, datetime]] = []
    current = start

    while current + step <= end:
        slots.append((current, current + step))
        current += step

    return slots


def generate_slots(
    therapist_id: uuid.UUID,
    windows_by_day: Mapping[int, Sequence[TherapistAvailability]],
    time_offs: Sequence[TherapistTimeOff],
    busy_intervals: Sequence[tuple[datetime, datetime]],
    start_date: date,
    end_date: date,
    slot_minutes: int,
    output_tz: ZoneInfo,
) -> list[Slot]:
    if slot_minutes <= 0:
        raise ValidationError('Slot duration must be positive.')

    slots: list[Slot] = []
    seen: set[tuple[datetime, datetime]] = set()

    for current_date in iterate_dates(start_date, end_date):
        if any(covers_date(time_off, current_date) for time_off in time_offs):
            continue

        for window in windows_by_day.get(day_of_week(current_date), ()):
            window_start, window_end = window_bounds(window, current_date)

            for slot_start, slot_end in split_window(window_start, window_end, slot_minutes):
                if any(
                    intervals_overlap(slot_start, slot_end, busy_start, busy_end)
                    for busy_start, busy_end in busy_intervals
                ):
                    continue
                # Windows in different zones can land on the same instants.
                if (slot_start, slot_end) in seen:
                    continue
                seen.add((slot_start, slot_end))

                slots.append(
                    Slot(
                        start=slot_start.astimezone(output_tz),
                        end=slot_end.astimezone(output_tz),
                        therapist_id=therapist_id,
                    )
                )

    slots.sort(key=lambda slot: slot.start)
    return slots


def validate_date_range(start_date: date, end_date: date) -> None:
    if start_date > end_date:
        raise ValidationError('End date must be on or after start date.')
    if (end_date - start_date).days + 1 > config.MAX_SLOT_RANGE_DAYS:
        raise ValidationError(f'Date range cannot exceed {config.MAX_SLOT_RANGE_DAYS} days.')


def get_busy_intervals(
    db: Session,
    therapist_id: uuid.UUID,
    range_start: datetime,
    range_end: datetime,
) -> list[tuple[datetime, datetime]]:
    rows = db.query(Appointment.scheduled_at, Appointment.ends_at).filter(
        Appointment.therapist_id == therapist_id,
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.scheduled_at < range_end,
        Appointment.ends_at > range_start,
    ).all()
    return [(scheduled_at, ends_at) for scheduled_at, ends_at in rows]


def compute_available_slots(
    db: Session,
    therapist_id: uuid.UUID,
    start_date: date,
    end_date: date,
    output_timezone: str,
) -> list[Slot]:
    validate_date_range(start_date, end_date)
    output_tz = resolve_timezone(output_timezone)
    therapist = get_therapist(db, therapist_id)

    # Windows are anchored in arbitrary zones; pad a day each side in UTC.
    range_start = datetime.combine(start_date - timedelta(days=1), time.min, tzinfo=timezone.utc)
    range_end = datetime.combine(end_date + timedelta(days=2), time.min, tzinfo=timezone.utc)

    slots = generate_slots(
        therapist_id=therapist.id,
        windows_by_day=repeating_windows_by_day(db, therapist.id),
        time_offs=time_off_for(db, therapist.id, start_date, end_date),
        busy_intervals=get_busy_intervals(db, therapist.id, range_start, range_end),
        start_date=start_date,
        end_date=end_date,
        slot_minutes=therapist.total_slot_duration,
        output_tz=output_tz,
    )

    logger.debug(
        'Computed %d slots for therapist %s between %s and %s',
        len(slots),
        therapist_id,
        start_date,
        end_date,
    )
    return slots
