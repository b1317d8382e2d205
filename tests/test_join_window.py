from datetime import datetime, timedelta, timezone

import pytest

from shared.join_window import (
    JoinState,
    classify_join_state,
    is_joinable,
    join_window_message,
)

SCHEDULED = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "offset, expected",
    [
        (timedelta(minutes=-11), JoinState.UPCOMING),
        (timedelta(minutes=-9), JoinState.JOINABLE_PENDING),
        (timedelta(minutes=1), JoinState.JOINABLE_STARTED),
        (timedelta(minutes=91), JoinState.WINDOW_CLOSED),
    ],
)
def test_classify_relative_to_scheduled_time(offset, expected) -> None:
    assert classify_join_state(SCHEDULED, "upcoming", SCHEDULED + offset) == expected


def test_window_bounds_are_inclusive() -> None:
    assert classify_join_state(SCHEDULED, "upcoming", SCHEDULED - timedelta(minutes=10)) == JoinState.JOINABLE_PENDING
    assert classify_join_state(SCHEDULED, "upcoming", SCHEDULED) == JoinState.JOINABLE_STARTED
    assert classify_join_state(SCHEDULED, "upcoming", SCHEDULED + timedelta(minutes=90)) == JoinState.JOINABLE_STARTED


def test_terminal_status_wins_over_time() -> None:
    for now in (SCHEDULED - timedelta(days=1), SCHEDULED, SCHEDULED + timedelta(days=1)):
        assert classify_join_state(SCHEDULED, "completed", now) == JoinState.COMPLETED
        assert classify_join_state(SCHEDULED, "cancelled", now) == JoinState.CANCELLED


def test_naive_datetimes_are_treated_as_utc() -> None:
    naive = SCHEDULED.replace(tzinfo=None)
    assert classify_join_state(naive, "upcoming", SCHEDULED + timedelta(minutes=5)) == JoinState.JOINABLE_STARTED


def test_custom_window_widths() -> None:
    state = classify_join_state(
        SCHEDULED,
        "upcoming",
        SCHEDULED - timedelta(minutes=20),
        before=timedelta(minutes=30),
        after=timedelta(minutes=5),
    )
    assert state == JoinState.JOINABLE_PENDING
    assert join_window_message(before=timedelta(minutes=30), after=timedelta(minutes=5)) == (
        "You can join 30 minutes before start until 5 minutes after start."
    )


def test_is_joinable() -> None:
    assert is_joinable(JoinState.JOINABLE_PENDING)
    assert is_joinable(JoinState.JOINABLE_STARTED)
    assert not is_joinable(JoinState.UPCOMING)
    assert not is_joinable(JoinState.WINDOW_CLOSED)
    assert not is_joinable(JoinState.COMPLETED)
