"""Storage and structural validation for therapist availability.

Windows are recurring weekly time-of-day ranges; time-off entries are
inclusive date ranges that remove a whole day from availability.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from scheduling_backend.database import begin_write
from scheduling_backend.models.availability import TherapistAvailability, TherapistTimeOff
from scheduling_backend.models.therapist import Therapist
from scheduling_backend.services.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

WINDOW_FIELDS = ('day_of_week', 'start_time', 'end_time', 'timezone', 'is_repeating')

# The earliest civil date in use anywhere is the one at UTC-12.
EARLIEST_ZONE = timezone(timedelta(hours=-12))

# Windows are compared on two occurrences of their weekday half a year apart,
# so both standard and daylight-saving offsets are checked.
REFERENCE_OFFSETS = (timedelta(0), timedelta(weeks=26))


def day_of_week(value: date) -> int:
    """Day index used by windows: 0 = Sunday ... 6 = Saturday."""
    return (value.weekday() + 1) % 7


def resolve_timezone(name: str | None) -> ZoneInfo:
    if not name or not name.strip():
        raise ValidationError('Timezone is required.')
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f'{name} is not a valid timezone.') from exc


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval intersection: touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end


def anchor_times(start_time: time, end_time: time, zone: ZoneInfo, on_date: date) -> tuple[datetime, datetime]:
    """Wall-clock times on ``on_date`` in ``zone``, as UTC instants."""
    start = datetime.combine(on_date, start_time, tzinfo=zone)
    end = datetime.combine(on_date, end_time, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def next_weekday(weekday: int, today: date) -> date:
    return today + timedelta(days=(weekday - day_of_week(today)) % 7)


def earliest_local_today(now: datetime | None = None) -> date:
    """The earliest date that is still "today" somewhere on Earth."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EARLIEST_ZONE).date()


def covers_date(time_off: TherapistTimeOff, value: date) -> bool:
    return time_off.start_date <= value <= time_off.end_date


def get_therapist(db: Session, therapist_id: uuid.UUID) -> Therapist:
    therapist = db.get(Therapist, therapist_id)
    if therapist is None:
        raise NotFound('Therapist not found.')
    return therapist


def windows_overlap(
    first: tuple[time, time, ZoneInfo],
    second: tuple[time, time, ZoneInfo],
    weekday: int,
    today: date,
) -> bool:
    """Whether two windows on the same weekday share any absolute instant."""
    first_date = next_weekday(weekday, today)
    for offset in REFERENCE_OFFSETS:
        on_date = first_date + offset
        if intervals_overlap(
            *anchor_times(first[0], first[1], first[2], on_date),
            *anchor_times(second[0], second[1], second[2], on_date),
        ):
            return True
    return False


def validate_window(
    db: Session,
    therapist_id: uuid.UUID,
    weekday: int,
    start_time: time,
    end_time: time,
    timezone_name: str,
    exclude_id: uuid.UUID | None = None,
    today: date | None = None,
) -> None:
    if weekday is None or not 0 <= weekday <= 6:
        raise ValidationError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
    if start_time is None or end_time is None:
        raise ValidationError('Start time and end time are required.')
    if start_time >= end_time:
        raise ValidationError('End time must be after start time.')
    zone = resolve_timezone(timezone_name)
    today = today or datetime.now(timezone.utc).date()

    query = db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
        TherapistAvailability.day_of_week == weekday,
    )
    if exclude_id is not None:
        query = query.filter(TherapistAvailability.id != exclude_id)

    for existing in query.all():
        existing_window = (existing.start_time, existing.end_time, resolve_timezone(existing.timezone))
        if windows_overlap((start_time, end_time, zone), existing_window, weekday, today):
            raise ValidationError('This availability window overlaps an existing window for this therapist.')


def validate_time_off_dates(start_date: date, end_date: date, today: date) -> None:
    if start_date is None or end_date is None:
        raise ValidationError('Start date and end date are required.')
    if start_date > end_date:
        raise ValidationError('End date must be on or after start date.')
    if start_date < today:
        raise ValidationError('Start date cannot be in the past.')
    if end_date < today:
        raise ValidationError('End date cannot be in the past.')


def list_windows(db: Session, therapist_id: uuid.UUID) -> list[TherapistAvailability]:
    get_therapist(db, therapist_id)
    return db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
    ).order_by(TherapistAvailability.day_of_week.asc(), TherapistAvailability.start_time.asc()).all()


def windows_for(
    db: Session,
    therapist_id: uuid.UUID,
    weekday: int,
    repeating_only: bool = True,
) -> list[TherapistAvailability]:
    query = db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
        TherapistAvailability.day_of_week == weekday,
    )
    if repeating_only:
        query = query.filter(TherapistAvailability.is_repeating.is_(True))
    return query.order_by(TherapistAvailability.start_time.asc()).all()


def repeating_windows_by_day(db: Session, therapist_id: uuid.UUID) -> dict[int, list[TherapistAvailability]]:
    """All repeating windows for a therapist in one query, grouped by day."""
    grouped: dict[int, list[TherapistAvailability]] = {}
    windows = db.query(TherapistAvailability).filter(
        TherapistAvailability.therapist_id == therapist_id,
        TherapistAvailability.is_repeating.is_(True),
    ).order_by(TherapistAvailability.start_time.asc()).all()
    for window in windows:
        grouped.setdefault(window.day_of_week, []).append(window)
    return grouped


def time_off_for(
    db: Session,
    therapist_id: uuid.UUID,
    start_date: date,
    end_date: date,
) -> list[TherapistTimeOff]:
    return db.query(TherapistTimeOff).filter(
        TherapistTimeOff.therapist_id == therapist_id,
        TherapistTimeOff.start_date <= end_date,
        TherapistTimeOff.end_date >= start_date,
    ).order_by(TherapistTimeOff.start_date.asc()).all()


def create_window(
    db: Session,
    therapist_id: uuid.UUID,
    day_of_week: int,
    start_time: time,
    end_time: time,
    timezone_name: str,
    is_repeating: bool = True,
) -> TherapistAvailability:
    # Overlap check and insert share one write transaction.
    begin_write(db)
    get_therapist(db, therapist_id)
    timezone_name = timezone_name.strip() if timezone_name else timezone_name
    validate_window(db, therapist_id, day_of_week, start_time, end_time, timezone_name)

    window = TherapistAvailability(
        therapist_id=therapist_id,
        day_of_week=day_of_week,
        start_time=start_time,
        end_time=end_time,
        timezone=timezone_name,
        is_repeating=is_repeating,
    )
    db.add(window)
    db.commit()
    db.refresh(window)

    logger.info('Created availability window %s for therapist %s', window.id, therapist_id)
    return window


def update_window(db: Session, window_id: uuid.UUID, **changes) -> TherapistAvailability:
    begin_write(db)
    window = db.get(TherapistAvailability, window_id)
    if window is None:
        raise NotFound('Availability window not found.')

    unknown = set(changes) - set(WINDOW_FIELDS)
    if unknown:
        raise ValidationError(f'Unknown availability fields: {", ".join(sorted(unknown))}.')

    merged = {field: getattr(window, field) for field in WINDOW_FIELDS}
    merged.update({field: value for field, value in changes.items() if value is not None})
    if isinstance(merged['timezone'], str):
        merged['timezone'] = merged['timezone'].strip()

    validate_window(
        db,
        window.therapist_id,
        merged['day_of_week'],
        merged['start_time'],
        merged['end_time'],
        merged['timezone'],
        exclude_id=window.id,
    )

    for field, value in merged.items():
        setattr(window, field, value)
    db.commit()
    db.refresh(window)

    logger.info('Updated availability window %s', window.id)
    return window


def delete_window(db: Session, window_id: uuid.UUID) -> None:
    window = db.get(TherapistAvailability, window_id)
    if window is None:
        raise NotFound('Availability window not found.')

    db.delete(window)
    db.commit()
    logger.info('Deleted availability window %s', window_id)


def list_time_off(db: Session, therapist_id: uuid.UUID) -> list[TherapistTimeOff]:
    get_therapist(db, therapist_id)
    return db.query(TherapistTimeOff).filter(
        TherapistTimeOff.therapist_id == therapist_id,
    ).order_by(TherapistTimeOff.start_date.asc()).all()


def create_time_off(
    db: Session,
    therapist_id: uuid.UUID,
    start_date: date,
    end_date: date,
    reason: str | None = None,
    today: date | None = None,
) -> TherapistTimeOff:
    """Record time off. ``today`` defaults to the earliest date still current in any timezone."""
    get_therapist(db, therapist_id)
    today = today or earliest_local_today()
    validate_time_off_dates(start_date, end_date, today)

    time_off = TherapistTimeOff(
        therapist_id=therapist_id,
        start_date=start_date,
        end_date=end_date,
        reason=(reason or '').strip() or None,
    )
    db.add(time_off)
    db.commit()
    db.refresh(time_off)

    logger.info(
        'Created time off %s for therapist %s (%s to %s)',
        time_off.id,
        therapist_id,
        start_date,
        end_date,
    )
    return time_off


def delete_time_off(db: Session, time_off_id: uuid.UUID) -> None:
    time_off = db.get(TherapistTimeOff, time_off_id)
    if time_off is None:
        raise NotFound('Time off not found.')

    db.delete(time_off)
    db.commit()
    logger.info('Deleted time off %s', time_off_id)
