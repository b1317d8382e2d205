from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from shared.join_window import utcnow

from .models import (
    ClassRequest,
    ClassSlot,
    Instructor,
    Meeting,
    Notification,
    PaymentStatus,
    RequestStatus,
    SlotStatus,
)


class RequestsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, request_id: str) -> Optional[ClassRequest]:
        return self.session.get(ClassRequest, request_id)

    def refresh(self, request: ClassRequest) -> ClassRequest:
        self.session.refresh(request)
        return request

    def list_incoming(self, user_id: str) -> list[ClassRequest]:
        statement = (
            select(ClassRequest)
            .where(ClassRequest.to_user_id == user_id)
            .order_by(ClassRequest.created_at.desc())
        )
        return list(self.session.exec(statement))

    def list_sent(self, user_id: str) -> list[ClassRequest]:
        statement = (
            select(ClassRequest)
            .where(ClassRequest.from_user_id == user_id)
            .order_by(ClassRequest.created_at.desc())
        )
        return list(self.session.exec(statement))

    def accept_pending(self, request_id: str, recipient_id: str, slot: datetime, payment_status: str) -> bool:
        """Conditionally move a pending request to accepted.

        Returns ``False`` when the request is not pending or not addressed to
        ``recipient_id``; the caller has already checked ``slot`` against the
        proposed list.
        """

        statement = (
            update(ClassRequest)
            .where(ClassRequest.id == request_id)
            .where(ClassRequest.to_user_id == recipient_id)
            .where(ClassRequest.status == RequestStatus.PENDING.value)
            .values(
                status=RequestStatus.ACCEPTED.value,
                selected_slot=slot,
                payment_status=payment_status,
                updated_at=utcnow(),
            )
        )
        result = self.session.exec(statement)  # type: ignore[call-overload]
        return result.rowcount == 1

    def mark_paid(self, request_id: str, payer_id: str) -> bool:
        statement = (
            update(ClassRequest)
            .where(ClassRequest.id == request_id)
            .where(ClassRequest.from_user_id == payer_id)
            .where(ClassRequest.status == RequestStatus.ACCEPTED.value)
            .where(ClassRequest.payment_status == PaymentStatus.NOT_PAID.value)
            .values(
                payment_status=PaymentStatus.PAID.value,
                paid_at=utcnow(),
                updated_at=utcnow(),
            )
        )
        result = self.session.exec(statement)  # type: ignore[call-overload]
        return result.rowcount == 1

    def increment_completed(self, request_id: str) -> None:
        statement = (
            update(ClassRequest)
            .where(ClassRequest.id == request_id)
            .values(
                classes_completed=ClassRequest.classes_completed + 1,
                updated_at=utcnow(),
            )
        )
        self.session.exec(statement)  # type: ignore[call-overload]


class MeetingsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, meeting_id: str) -> Optional[Meeting]:
        return self.session.get(Meeting, meeting_id)

    def get_by_request(self, request_id: str) -> Optional[Meeting]:
        statement = select(Meeting).where(Meeting.request_id == request_id)
        return self.session.exec(statement).first()

    def list_for_user(self, user_id: str) -> list[Meeting]:
        # participants are the linked request's requester and recipient
        statement = (
            select(Meeting)
            .join(ClassRequest, ClassRequest.id == Meeting.request_id)
            .where(or_(ClassRequest.from_user_id == user_id, ClassRequest.to_user_id == user_id))
            .order_by(Meeting.created_at.desc())
        )
        return list(self.session.exec(statement))

    def slots(self, meeting_id: str) -> list[ClassSlot]:
        statement = select(ClassSlot).where(ClassSlot.meeting_id == meeting_id).order_by(ClassSlot.position)
        return list(self.session.exec(statement))

    def get_slot(self, meeting_id: str, position: int) -> Optional[ClassSlot]:
        statement = (
            select(ClassSlot)
            .where(ClassSlot.meeting_id == meeting_id)
            .where(ClassSlot.position == position)
        )
        return self.session.exec(statement).first()

    def find_slot_by_room(self, room_id: str) -> Optional[ClassSlot]:
        statement = select(ClassSlot).where(ClassSlot.room_id == room_id)
        return self.session.exec(statement).first()

    def complete_upcoming(self, slot_id: int, *, start: datetime, end: datetime, duration_sec: int) -> bool:
        statement = (
            update(ClassSlot)
            .where(ClassSlot.id == slot_id)
            .where(ClassSlot.status == SlotStatus.UPCOMING.value)
            .values(
                status=SlotStatus.COMPLETED.value,
                started_at=start,
                ended_at=end,
                duration_sec=duration_sec,
            )
        )
        result = self.session.exec(statement)  # type: ignore[call-overload]
        return result.rowcount == 1


class NotificationsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, notification_id: int) -> Optional[Notification]:
        return self.session.get(Notification, notification_id)

    def list_for_user(self, user_id: str, limit: int = 100) -> list[Notification]:
        statement = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return list(self.session.exec(statement))

    def unread_count(self, user_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.read == False)  # noqa: E712
        )
        return self.session.exec(statement).one()

    def mark_read(self, notification: Notification) -> Notification:
        if not notification.read:
            notification.read = True
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
        return notification


class InstructorsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, instructor_id: str) -> Optional[Instructor]:
        return self.session.get(Instructor, instructor_id)

    def upsert_pricing(self, instructor_id: str, *, price4: float, price6: float) -> Instructor:
        instructor = self.session.get(Instructor, instructor_id) or Instructor(id=instructor_id)
        instructor.price4 = price4
        instructor.price6 = price6
        self.session.add(instructor)
        self.session.commit()
        self.session.refresh(instructor)
        return instructor
