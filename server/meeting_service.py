from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session

from shared.join_window import (
    JOIN_AFTER,
    JOIN_BEFORE,
    classify_join_state,
    ensure_utc,
    is_joinable,
    join_window_message,
    utcnow,
)

from .errors import AuthorizationError, ConflictError, JoinWindowError, NotFoundError
from .events import DomainEvent, EventBus
from .models import (
    ClassRequest,
    ClassSlot,
    Meeting,
    NotificationType,
    PaymentStatus,
    SlotStatus,
    meeting_to_dict,
)
from .repositories import MeetingsRepository, RequestsRepository
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class MeetingService:
    """Participant-only access to meetings, rooms and class completion.

    The join-window check here is the authoritative one; any client-side
    classification only drives UI affordances.
    """

    def __init__(
        self,
        events: EventBus,
        *,
        registry: Optional[RoomRegistry] = None,
        join_before: timedelta = JOIN_BEFORE,
        join_after: timedelta = JOIN_AFTER,
    ) -> None:
        self._events = events
        self._registry = registry
        self._join_before = join_before
        self._join_after = join_after

    def get_meeting(self, session: Session, user_id: str, meeting_id: str) -> dict:
        meeting = self._participant_meeting(session, user_id, meeting_id)
        return meeting_to_dict(meeting, MeetingsRepository(session).slots(meeting.id))

    def list_for_user(self, session: Session, user_id: str, target_user_id: str) -> list[dict]:
        if user_id != target_user_id:
            raise AuthorizationError("Not allowed")
        repo = MeetingsRepository(session)
        return [meeting_to_dict(meeting, repo.slots(meeting.id)) for meeting in repo.list_for_user(user_id)]

    def reveal_room(
        self,
        session: Session,
        user_id: str,
        meeting_id: str,
        index: int,
        *,
        now: Optional[datetime] = None,
    ) -> dict:
        meeting = self._participant_meeting(session, user_id, meeting_id)
        slot = self._slot(session, meeting, index)
        if slot.status in (SlotStatus.COMPLETED.value, SlotStatus.CANCELLED.value):
            raise JoinWindowError("Class is not open for joining")
        if not is_joinable(self._classify(slot, now)):
            raise JoinWindowError(join_window_message(before=self._join_before, after=self._join_after))
        logger.info("Revealed room for meeting %s class %d to %s", meeting.id, index, user_id)
        return {
            "room_id": slot.room_id,
            "meeting_id": meeting.id,
            "class_index": slot.position,
            "duration_min": slot.duration_min,
            "scheduled_at": ensure_utc(slot.scheduled_at).isoformat(),
            "teacher_id": slot.teacher_id,
        }

    def resolve_room(
        self,
        session: Session,
        user_id: str,
        room_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> dict:
        if not room_id:
            raise NotFoundError("Room not found")
        repo = MeetingsRepository(session)
        slot = repo.find_slot_by_room(room_id)
        if slot is None:
            raise NotFoundError("Room not found")
        meeting = self._participant_meeting(session, user_id, slot.meeting_id)
        return {
            "meeting_id": meeting.id,
            "class_index": slot.position,
            "duration_min": slot.duration_min,
            "scheduled_at": ensure_utc(slot.scheduled_at).isoformat(),
            "teacher_id": slot.teacher_id,
            "can_join": is_joinable(self._classify(slot, now)),
        }

    def is_room_participant(self, session: Session, user_id: str, room_id: str) -> bool:
        repo = MeetingsRepository(session)
        slot = repo.find_slot_by_room(room_id)
        if slot is None:
            return False
        meeting = repo.get(slot.meeting_id)
        return meeting is not None and user_id in meeting.participant_ids

    def complete_class(
        self,
        session: Session,
        user_id: str,
        meeting_id: str,
        index: int,
        *,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        meeting = self._participant_meeting(session, user_id, meeting_id)
        slot = self._slot(session, meeting, index)
        if slot.status == SlotStatus.CANCELLED.value:
            raise ConflictError("Class was cancelled")
        if slot.status == SlotStatus.COMPLETED.value:
            return _completion_payload(slot)

        current = ensure_utc(now) if now is not None else utcnow()
        start = self._resolve_start(slot, start_at, current)
        end = ensure_utc(end_at) if end_at is not None else current
        duration_sec = max(0, int((end - start).total_seconds()))

        repo = MeetingsRepository(session)
        if not repo.complete_upcoming(slot.id, start=start, end=end, duration_sec=duration_sec):
            # lost a race with another completion or a cancellation
            session.rollback()
            session.refresh(slot)
            if slot.status == SlotStatus.COMPLETED.value:
                return _completion_payload(slot)
            raise ConflictError("Class was cancelled")

        requests = RequestsRepository(session)
        request = requests.get(meeting.request_id)
        if request is not None:
            requests.increment_completed(request.id)
            session.refresh(request)
            _release_payment(request)
            session.add(request)

        self._events.emit(
            session,
            DomainEvent(
                type=NotificationType.CLASS_COMPLETED,
                recipients=tuple(meeting.participant_ids),
                message=f"Class #{index + 1} for meeting {meeting.id[-6:]} was marked completed.",
                related_request_id=meeting.request_id,
            ),
        )
        session.commit()
        session.refresh(slot)
        logger.info("Class %d of meeting %s completed (%ds)", index, meeting.id, duration_sec)
        return _completion_payload(slot)

    def _resolve_start(self, slot: ClassSlot, start_at: Optional[datetime], current: datetime) -> datetime:
        if start_at is not None:
            return ensure_utc(start_at)
        if slot.started_at is not None:
            return ensure_utc(slot.started_at)
        if self._registry is not None:
            observed = self._registry.call_started_at(slot.room_id)
            if observed is not None:
                return observed
        return current

    def _classify(self, slot: ClassSlot, now: Optional[datetime]):
        return classify_join_state(
            slot.scheduled_at,
            slot.status,
            now,
            before=self._join_before,
            after=self._join_after,
        )

    def _participant_meeting(self, session: Session, user_id: str, meeting_id: str) -> Meeting:
        meeting = MeetingsRepository(session).get(meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        if user_id not in meeting.participant_ids:
            raise AuthorizationError("Not allowed")
        return meeting

    def _slot(self, session: Session, meeting: Meeting, index: int) -> ClassSlot:
        slot = MeetingsRepository(session).get_slot(meeting.id, index) if index >= 0 else None
        if slot is None:
            raise NotFoundError("Class slot not found")
        return slot


def _release_payment(request: ClassRequest) -> None:
    if request.payment_status not in (PaymentStatus.PAID.value, PaymentStatus.PARTIAL_RELEASED.value):
        return
    completed = min(request.classes_completed, request.classes)
    request.amount_released = round(request.per_class_amount * completed, 2)
    if completed >= request.classes:
        request.payment_status = PaymentStatus.FULLY_RELEASED.value
    else:
        request.payment_status = PaymentStatus.PARTIAL_RELEASED.value


def _completion_payload(slot: ClassSlot) -> dict:
    return {
        "message": "Class marked completed",
        "duration_sec": slot.duration_sec,
        "start_at": ensure_utc(slot.started_at).isoformat() if slot.started_at else None,
        "end_at": ensure_utc(slot.ended_at).isoformat() if slot.ended_at else None,
    }
