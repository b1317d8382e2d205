"""Join-window policy shared by the server and the call client.

The server calls :func:`classify_join_state` before revealing a room id and that
answer is the only one that grants access. Clients import the same function to
decide whether to show a join affordance; their result is advisory and must
never be treated as an access check.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

JOIN_BEFORE = timedelta(minutes=10)
JOIN_AFTER = timedelta(minutes=90)


class JoinState(str, Enum):
    """Where a class slot sits relative to its join window."""

    UPCOMING = "upcoming"
    JOINABLE_PENDING = "joinable-pending"
    JOINABLE_STARTED = "joinable-started"
    WINDOW_CLOSED = "window-closed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify_join_state(
    scheduled_at: datetime,
    status: str,
    now: Optional[datetime] = None,
    *,
    before: timedelta = JOIN_BEFORE,
    after: timedelta = JOIN_AFTER,
) -> JoinState:
    if status == JoinState.COMPLETED.value:
        return JoinState.COMPLETED
    if status == JoinState.CANCELLED.value:
        return JoinState.CANCELLED

    start = ensure_utc(scheduled_at)
    current = ensure_utc(now) if now is not None else utcnow()
    if current < start - before:
        return JoinState.UPCOMING
    if current > start + after:
        return JoinState.WINDOW_CLOSED
    if current < start:
        return JoinState.JOINABLE_PENDING
    return JoinState.JOINABLE_STARTED


def is_joinable(state: JoinState) -> bool:
    return state in (JoinState.JOINABLE_PENDING, JoinState.JOINABLE_STARTED)


def join_window_message(*, before: timedelta = JOIN_BEFORE, after: timedelta = JOIN_AFTER) -> str:
    before_min = int(before.total_seconds() // 60)
    after_min = int(after.total_seconds() // 60)
    return f"You can join {before_min} minutes before start until {after_min} minutes after start."
