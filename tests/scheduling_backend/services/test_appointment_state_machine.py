import threading
import uuid
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import NOW, add_therapist, add_window
from scheduling_backend.models.appointment import Appointment, AppointmentStatus
from scheduling_backend.services import appointment_state_machine as state_machine
from scheduling_backend.services.booking_coordinator import book
from scheduling_backend.services.errors import AccessDenied, NotFound, PolicyViolation, SlotUnavailable
from scheduling_backend.services.slot_generator import compute_available_slots

LOS_ANGELES = ZoneInfo('America/Los_Angeles')
MONDAY = date(2026, 1, 5)
MONDAY_NINE = datetime(2026, 1, 5, 9, 0, tzinfo=LOS_ANGELES)
MONDAY_TEN = datetime(2026, 1, 5, 10, 0, tzinfo=LOS_ANGELES)
MONDAY_ELEVEN = datetime(2026, 1, 5, 11, 0, tzinfo=LOS_ANGELES)


@pytest.fixture
def appointment(scheduling_db, monday_therapist) -> Appointment:
    return book(scheduling_db, monday_therapist.id, 'session-1', MONDAY_TEN, now=NOW)


def _slot_hours(scheduling_db, therapist_id: uuid.UUID) -> list[int]:
    slots = compute_available_slots(scheduling_db, therapist_id, MONDAY, MONDAY, 'America/Los_Angeles')
    return [slot.start.hour for slot in slots]


@pytest.mark.parametrize(
    ('current', 'target', 'expected'),
    [
        ('scheduled', 'confirmed', True),
        ('scheduled', 'cancelled', True),
        ('scheduled', 'no_show', True),
        ('scheduled', 'completed', False),
        ('confirmed', 'completed', True),
        ('confirmed', 'scheduled', False),
        ('cancelled', 'scheduled', False),
        ('completed', 'cancelled', False),
        ('no_show', 'completed', False),
    ],
)
def test_can_transition(current: str, target: str, expected: bool) -> None:
    assert state_machine.can_transition(current, target) is expected


def test_terminal_statuses() -> None:
    assert [status.value for status in AppointmentStatus if state_machine.is_terminal(status.value)] == [
        'cancelled',
        'completed',
        'no_show',
    ]


def test_is_cancellable_requires_strictly_more_than_notice(appointment) -> None:
    exactly_at_notice = appointment.scheduled_at - timedelta(hours=24)

    assert state_machine.is_cancellable(appointment, exactly_at_notice - timedelta(seconds=1)) is True
    assert state_machine.is_cancellable(appointment, exactly_at_notice) is False
    assert state_machine.is_cancellable(appointment, exactly_at_notice, notice_hours=12) is True
    assert state_machine.is_reschedulable(appointment, exactly_at_notice) is False


def test_cancel_sets_status_timestamp_and_reason(scheduling_db, appointment) -> None:
    cancelled = state_machine.cancel(scheduling_db, appointment.id, '  Family emergency ', now=NOW)

    assert cancelled.status == AppointmentStatus.CANCELLED.value
    assert cancelled.cancelled_at == NOW
    assert cancelled.cancellation_reason == 'Family emergency'


def test_cancel_inside_notice_window_leaves_appointment_unchanged(scheduling_db, appointment) -> None:
    late = appointment.scheduled_at - timedelta(hours=23)

    with pytest.raises(PolicyViolation):
        state_machine.cancel(scheduling_db, appointment.id, 'Too late', now=late)

    scheduling_db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert appointment.cancelled_at is None
    assert appointment.cancellation_reason is None


def test_cancel_twice_is_rejected(scheduling_db, appointment) -> None:
    state_machine.cancel(scheduling_db, appointment.id, now=NOW)

    with pytest.raises(PolicyViolation):
        state_machine.cancel(scheduling_db, appointment.id, now=NOW)


def test_cancel_unknown_appointment(scheduling_db) -> None:
    with pytest.raises(NotFound):
        state_machine.cancel(scheduling_db, uuid.uuid4(), now=NOW)


def test_confirm_then_complete(scheduling_db, appointment) -> None:
    confirmed = state_machine.confirm(scheduling_db, appointment.id, now=NOW)

    assert confirmed.status == AppointmentStatus.CONFIRMED.value
    assert confirmed.confirmed_at == NOW

    with pytest.raises(PolicyViolation):
        state_machine.confirm(scheduling_db, appointment.id, now=NOW)

    after_start = appointment.scheduled_at + timedelta(minutes=55)
    completed = state_machine.complete(scheduling_db, appointment.id, now=after_start)

    assert completed.status == AppointmentStatus.COMPLETED.value


def test_complete_requires_confirmation(scheduling_db, appointment) -> None:
    with pytest.raises(PolicyViolation):
        state_machine.complete(scheduling_db, appointment.id, now=appointment.ends_at)


def test_complete_and_no_show_are_rejected_before_start(scheduling_db, appointment) -> None:
    state_machine.confirm(scheduling_db, appointment.id, now=NOW)

    with pytest.raises(PolicyViolation):
        state_machine.complete(scheduling_db, appointment.id, now=NOW)
    with pytest.raises(PolicyViolation):
        state_machine.mark_no_show(scheduling_db, appointment.id, now=NOW)

    scheduling_db.refresh(appointment)
    assert appointment.status == AppointmentStatus.CONFIRMED.value


def test_mark_no_show_after_start(scheduling_db, appointment) -> None:
    missed = state_machine.mark_no_show(scheduling_db, appointment.id, now=appointment.ends_at)

    assert missed.status == AppointmentStatus.NO_SHOW.value

    with pytest.raises(PolicyViolation):
        state_machine.cancel(scheduling_db, appointment.id, now=NOW)


def test_reschedule_cancels_original_and_links_replacement(scheduling_db, appointment) -> None:
    replacement = state_machine.reschedule(scheduling_db, appointment.id, MONDAY_ELEVEN, now=NOW)
    scheduling_db.refresh(appointment)

    assert replacement.id != appointment.id
    assert replacement.status == AppointmentStatus.SCHEDULED.value
    assert replacement.scheduled_at == datetime(2026, 1, 5, 19, 0, tzinfo=timezone.utc)
    assert replacement.rescheduled_from_id == appointment.id
    assert replacement.session_id == appointment.session_id
    assert replacement.duration_minutes == appointment.duration_minutes
    assert replacement.confirmation_number != appointment.confirmation_number
    assert appointment.status == AppointmentStatus.CANCELLED.value
    assert appointment.cancellation_reason == state_machine.RESCHEDULE_REASON


def test_reschedule_to_the_same_time(scheduling_db, appointment) -> None:
    replacement = state_machine.reschedule(scheduling_db, appointment.id, MONDAY_TEN, now=NOW)

    assert replacement.scheduled_at == appointment.scheduled_at
    assert replacement.rescheduled_from_id == appointment.id


def test_reschedule_conflict_leaves_original_untouched(scheduling_db, monday_therapist, appointment) -> None:
    blocker = book(scheduling_db, monday_therapist.id, 'session-2', MONDAY_ELEVEN, now=NOW)

    with pytest.raises(SlotUnavailable):
        state_machine.reschedule(scheduling_db, appointment.id, MONDAY_ELEVEN, now=NOW)

    scheduling_db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert appointment.cancelled_at is None
    assert scheduling_db.query(Appointment).count() == 2
    assert blocker.status == AppointmentStatus.SCHEDULED.value


def test_reschedule_inside_notice_window_is_rejected(scheduling_db, appointment) -> None:
    with pytest.raises(PolicyViolation):
        state_machine.reschedule(
            scheduling_db,
            appointment.id,
            MONDAY_ELEVEN,
            now=appointment.scheduled_at - timedelta(hours=2),
        )

    scheduling_db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED.value


def test_cancelled_slot_can_be_booked_again(scheduling_db, monday_therapist, appointment) -> None:
    assert _slot_hours(scheduling_db, monday_therapist.id) == [9, 11]

    state_machine.cancel(scheduling_db, appointment.id, now=NOW)
    assert _slot_hours(scheduling_db, monday_therapist.id) == [9, 10, 11]

    rebooked = book(scheduling_db, monday_therapist.id, 'session-3', MONDAY_TEN, now=NOW)

    assert rebooked.status == AppointmentStatus.SCHEDULED.value
    assert _slot_hours(scheduling_db, monday_therapist.id) == [9, 11]


def test_booking_one_slot_leaves_the_others(scheduling_db, monday_therapist) -> None:
    book(scheduling_db, monday_therapist.id, 'session-1', MONDAY_NINE, now=NOW)

    assert _slot_hours(scheduling_db, monday_therapist.id) == [10, 11]


@pytest.mark.parametrize(
    ('operation', 'args'),
    [
        (state_machine.cancel, ()),
        (state_machine.reschedule, (MONDAY_ELEVEN,)),
        (state_machine.confirm, ()),
    ],
)
def test_changes_from_another_session_are_denied(scheduling_db, appointment, operation, args) -> None:
    with pytest.raises(AccessDenied):
        operation(scheduling_db, appointment.id, *args, now=NOW, session_id='session-2')

    scheduling_db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert scheduling_db.query(Appointment).count() == 1


def test_owning_session_can_cancel(scheduling_db, appointment) -> None:
    cancelled = state_machine.cancel(scheduling_db, appointment.id, now=NOW, session_id=' session-1 ')

    assert cancelled.status == AppointmentStatus.CANCELLED.value


def test_reschedule_racing_a_booking_of_the_target_slot(file_session_factory) -> None:
    setup_db = file_session_factory()
    try:
        therapist_id = add_therapist(setup_db).id
        add_window(setup_db, therapist_id, 1, time(9, 0), time(12, 0))
        original_id = book(setup_db, therapist_id, 'session-1', MONDAY_TEN, now=NOW).id
    finally:
        setup_db.close()

    barrier = threading.Barrier(2)
    outcomes = {}

    def run(name: str, operation) -> None:
        db = file_session_factory()
        try:
            barrier.wait()
            operation(db)
            outcomes[name] = 'won'
        except SlotUnavailable:
            outcomes[name] = 'lost'
        finally:
            db.close()

    threads = [
        threading.Thread(target=run, args=(
            'reschedule',
            lambda db: state_machine.reschedule(db, original_id, MONDAY_ELEVEN, now=NOW),
        )),
        threading.Thread(target=run, args=(
            'book',
            lambda db: book(db, therapist_id, 'session-2', MONDAY_ELEVEN, now=NOW),
        )),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes.values()) == ['lost', 'won']

    verify_db = file_session_factory()
    try:
        original = verify_db.get(Appointment, original_id)
        at_eleven = verify_db.query(Appointment).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.scheduled_at == MONDAY_ELEVEN,
            Appointment.status.in_([AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value]),
        ).count()
    finally:
        verify_db.close()

    assert at_eleven == 1
    if outcomes['reschedule'] == 'lost':
        assert original.status == AppointmentStatus.SCHEDULED.value
        assert original.cancelled_at is None
    else:
        assert original.status == AppointmentStatus.CANCELLED.value
