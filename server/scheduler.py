from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Sequence, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from shared.join_window import ensure_utc, utcnow

from .errors import NotFoundError, ValidationError
from .events import DomainEvent, EventBus
from .models import (
    ALLOWED_CLASS_COUNTS,
    ClassRequest,
    ClassSlot,
    Meeting,
    NotificationType,
    RequestType,
)
from .repositories import RequestsRepository

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_DAYS = 2
ROOM_SUFFIX_BYTES = 16

DateLike = Union[str, datetime]
_datetime_adapter = TypeAdapter(datetime)


def generate_room_id(meeting_id: str, index: int) -> str:
    """Short meeting prefix + slot index + 128 random bits."""
    return f"{str(meeting_id)[-6:]}-{index}-{secrets.token_urlsafe(ROOM_SUFFIX_BYTES)}"


def parse_datetime(value: DateLike) -> datetime:
    try:
        parsed = value if isinstance(value, datetime) else _datetime_adapter.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid datetime: {value!r}") from exc
    return ensure_utc(parsed)


def resolve_base_time(request: ClassRequest, now: Optional[datetime] = None) -> datetime:
    if request.selected_slot is not None:
        return ensure_utc(request.selected_slot)
    if request.proposed_slots:
        return parse_datetime(request.proposed_slots[0])
    return ensure_utc(now) if now is not None else utcnow()


def build_schedule(
    request: ClassRequest,
    *,
    class_dates: Optional[Sequence[DateLike]] = None,
    interval_days: int = DEFAULT_INTERVAL_DAYS,
    now: Optional[datetime] = None,
) -> list[tuple[datetime, str]]:
    """Compute ``(scheduled_at, teacher_id)`` for every class of ``request``.

    Pure: validates the inputs and touches no storage.
    """

    total = int(request.classes or 0)
    if total not in ALLOWED_CLASS_COUNTS:
        raise ValidationError("Invalid classes count on request")

    if class_dates:
        if len(class_dates) != total:
            raise ValidationError(
                f"class_dates length ({len(class_dates)}) must equal request classes ({total})"
            )
        dates = [parse_datetime(value) for value in class_dates]
    else:
        if isinstance(interval_days, bool) or not isinstance(interval_days, int) or interval_days <= 0:
            raise ValidationError("interval_days must be a positive integer")
        base = resolve_base_time(request, now)
        dates = [base + timedelta(days=index * interval_days) for index in range(total)]

    schedule: list[tuple[datetime, str]] = []
    for index, scheduled_at in enumerate(dates):
        if request.type == RequestType.PAID.value:
            teacher_id = request.to_user_id
        else:
            # exchange: the recipient teaches even classes, the requester odd ones
            teacher_id = request.to_user_id if index % 2 == 0 else request.from_user_id
        schedule.append((scheduled_at, teacher_id))
    return schedule


class MeetingScheduler:
    """Turns an accepted or paid request into a meeting with class slots."""

    def __init__(self, engine: Engine, events: EventBus) -> None:
        self._engine = engine
        self._events = events

    def create_meeting_for_request(
        self,
        request_id: str,
        *,
        class_dates: Optional[Sequence[DateLike]] = None,
        interval_days: int = DEFAULT_INTERVAL_DAYS,
        now: Optional[datetime] = None,
    ) -> Optional[Meeting]:
        """Create the meeting for ``request_id``.

        Returns ``None`` when the request already links to a meeting. Meeting,
        slots, room ids, the request link and the notifications are committed
        together or not at all.
        """

        with Session(self._engine, expire_on_commit=False) as session:
            request = RequestsRepository(session).get(request_id)
            if request is None:
                raise NotFoundError("Request not found")
            if request.meeting_id:
                logger.info("Request %s already has meeting %s", request_id, request.meeting_id)
                return None
            schedule = build_schedule(request, class_dates=class_dates, interval_days=interval_days, now=now)

            try:
                # the link may have been set while this request was being validated
                session.refresh(request)
                if request.meeting_id:
                    logger.info("Request %s was linked concurrently", request_id)
                    return None

                meeting = Meeting(request_id=request.id, participant_ids=list(request.participants()))
                session.add(meeting)
                session.flush()

                for index, (scheduled_at, teacher_id) in enumerate(schedule):
                    session.add(
                        ClassSlot(
                            meeting_id=meeting.id,
                            position=index,
                            scheduled_at=scheduled_at,
                            teacher_id=teacher_id,
                            room_id=generate_room_id(meeting.id, index),
                        )
                    )

                request.meeting_id = meeting.id
                request.updated_at = utcnow()
                session.add(request)

                self._events.emit(
                    session,
                    DomainEvent(
                        type=NotificationType.MEETING_CREATED,
                        recipients=request.participants(),
                        message="Meeting has been scheduled for your request.",
                        related_request_id=request.id,
                    ),
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("Meeting for request %s was created by a concurrent call", request_id)
                return None
            except Exception:
                session.rollback()
                logger.exception("Meeting creation for request %s rolled back", request_id)
                raise

        logger.info("Created meeting %s with %d classes for request %s", meeting.id, len(schedule), request_id)
        return meeting
