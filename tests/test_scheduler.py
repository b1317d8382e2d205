from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from server.errors import ValidationError
from server.events import EventBus, write_notifications
from server.models import ClassRequest, ClassSlot, Meeting, Notification
from server.scheduler import MeetingScheduler, build_schedule, generate_room_id
from shared.join_window import ensure_utc


def _slots(engine, meeting_id):
    with Session(engine) as session:
        statement = select(ClassSlot).where(ClassSlot.meeting_id == meeting_id).order_by(ClassSlot.position)
        return list(session.exec(statement))


def _meetings(engine):
    with Session(engine) as session:
        return list(session.exec(select(Meeting)))


def test_exchange_meeting_alternates_teachers_every_two_days(engine, make_request) -> None:
    request_id = make_request()
    events = EventBus()
    meeting = MeetingScheduler(engine, events).create_meeting_for_request(request_id)

    assert meeting is not None
    slots = _slots(engine, meeting.id)
    assert [ensure_utc(slot.scheduled_at) for slot in slots] == [
        datetime(2024, 1, 1, 10, tzinfo=timezone.utc),
        datetime(2024, 1, 3, 10, tzinfo=timezone.utc),
        datetime(2024, 1, 5, 10, tzinfo=timezone.utc),
        datetime(2024, 1, 7, 10, tzinfo=timezone.utc),
    ]
    assert [slot.teacher_id for slot in slots] == ["teacher", "learner", "teacher", "learner"]
    assert all(slot.status == "upcoming" for slot in slots)

    room_ids = [slot.room_id for slot in slots]
    assert all(room_ids)
    assert len(set(room_ids)) == len(room_ids)
    assert all(room_id.startswith(f"{meeting.id[-6:]}-{index}-") for index, room_id in enumerate(room_ids))

    with Session(engine) as session:
        request = session.get(ClassRequest, request_id)
        assert request.meeting_id == meeting.id
        notifications = list(session.exec(select(Notification)))
    assert sorted(item.user_id for item in notifications) == ["learner", "teacher"]
    assert {item.type for item in notifications} == {"meeting_created"}

    logged = events.recent_events()
    assert [entry["type"] for entry in logged] == ["meeting_created"]
    assert logged[0]["related_request_id"] == request_id
    assert events.recent_events(0) == []


def test_paid_meeting_is_taught_by_recipient(engine, make_request) -> None:
    request_id = make_request(type="paid", classes=6, payment_status="paid")
    meeting = MeetingScheduler(engine, EventBus()).create_meeting_for_request(request_id, interval_days=7)

    slots = _slots(engine, meeting.id)
    assert len(slots) == 6
    assert {slot.teacher_id for slot in slots} == {"teacher"}
    assert ensure_utc(slots[1].scheduled_at) - ensure_utc(slots[0].scheduled_at) == timedelta(days=7)


def test_second_call_is_a_noop(engine, make_request) -> None:
    request_id = make_request()
    scheduler = MeetingScheduler(engine, EventBus())
    first = scheduler.create_meeting_for_request(request_id)
    second = scheduler.create_meeting_for_request(request_id)

    assert first is not None
    assert second is None
    assert len(_meetings(engine)) == 1
    with Session(engine) as session:
        assert session.get(ClassRequest, request_id).meeting_id == first.id


def test_explicit_class_dates_are_used_verbatim(engine, make_request) -> None:
    request_id = make_request()
    dates = ["2024-02-01T09:00:00Z", "2024-02-02T09:00:00Z", "2024-02-10T18:30:00Z", "2024-03-01T09:00:00Z"]
    meeting = MeetingScheduler(engine, EventBus()).create_meeting_for_request(request_id, class_dates=dates)

    scheduled = [ensure_utc(slot.scheduled_at) for slot in _slots(engine, meeting.id)]
    assert scheduled[2] == datetime(2024, 2, 10, 18, 30, tzinfo=timezone.utc)


def test_class_dates_length_mismatch_writes_nothing(engine, make_request) -> None:
    request_id = make_request()
    with pytest.raises(ValidationError):
        MeetingScheduler(engine, EventBus()).create_meeting_for_request(
            request_id,
            class_dates=["2024-02-01T09:00:00Z"],
        )
    assert _meetings(engine) == []
    with Session(engine) as session:
        assert session.get(ClassRequest, request_id).meeting_id is None


@pytest.mark.parametrize("interval", [0, -2])
def test_non_positive_interval_is_rejected(engine, make_request, interval) -> None:
    request_id = make_request()
    with pytest.raises(ValidationError):
        MeetingScheduler(engine, EventBus()).create_meeting_for_request(request_id, interval_days=interval)


def test_failure_mid_write_rolls_everything_back(engine, make_request) -> None:
    request_id = make_request()

    def exploding_handler(session, event) -> None:
        raise RuntimeError("notification store unavailable")

    with pytest.raises(RuntimeError):
        MeetingScheduler(engine, EventBus([write_notifications, exploding_handler])).create_meeting_for_request(request_id)

    assert _meetings(engine) == []
    with Session(engine) as session:
        assert list(session.exec(select(ClassSlot))) == []
        assert list(session.exec(select(Notification))) == []
        assert session.get(ClassRequest, request_id).meeting_id is None

    meeting = MeetingScheduler(engine, EventBus()).create_meeting_for_request(request_id)
    assert meeting is not None


def test_build_schedule_falls_back_to_first_proposed_slot() -> None:
    request = ClassRequest(
        from_user_id="learner",
        to_user_id="teacher",
        type="exchange",
        classes=4,
        proposed_slots=["2024-05-05T08:00:00+00:00", "2024-05-06T08:00:00+00:00"],
    )
    schedule = build_schedule(request)
    assert schedule[0] == (datetime(2024, 5, 5, 8, tzinfo=timezone.utc), "teacher")
    assert schedule[3][0] == datetime(2024, 5, 11, 8, tzinfo=timezone.utc)


def test_build_schedule_rejects_unsupported_class_count() -> None:
    request = ClassRequest(from_user_id="a", to_user_id="b", type="paid", classes=5, proposed_slots=[])
    with pytest.raises(ValidationError):
        build_schedule(request)


def test_room_ids_are_unguessable() -> None:
    first = generate_room_id("0123456789abcdef", 0)
    second = generate_room_id("0123456789abcdef", 0)
    assert first != second
    assert first.startswith("abcdef-0-")
    assert len(first.split("-", 2)[2]) >= 20
