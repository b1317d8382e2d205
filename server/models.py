from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from shared.join_window import ensure_utc, utcnow
from shared.protocol import DEFAULT_CLASS_DURATION_MIN


def new_id() -> str:
    return uuid.uuid4().hex


class RequestType(str, Enum):
    PAID = "paid"
    EXCHANGE = "exchange"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    NOT_PAID = "not_paid"
    PAID = "paid"
    PARTIAL_RELEASED = "partial_released"
    FULLY_RELEASED = "fully_released"
    NOT_APPLICABLE = "not_applicable"


class SlotStatus(str, Enum):
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationType(str, Enum):
    NEW_REQUEST = "new_request"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_REJECTED = "request_rejected"
    PAYMENT_DONE = "payment_done"
    MEETING_CREATED = "meeting_created"
    CLASS_COMPLETED = "class_completed"


ALLOWED_CLASS_COUNTS = (4, 6)


class Instructor(SQLModel, table=True):
    __tablename__ = "instructors"

    id: str = Field(primary_key=True)
    price4: float = Field(default=0)
    price6: float = Field(default=0)

    def package_price(self, classes: int) -> float:
        return self.price4 if classes == 4 else self.price6


class ClassRequest(SQLModel, table=True):
    __tablename__ = "requests"

    id: str = Field(default_factory=new_id, primary_key=True)
    from_user_id: str = Field(index=True)
    to_user_id: str = Field(index=True)
    type: str  # paid|exchange
    classes: int  # 4|6
    # ISO-8601 UTC strings, in the order the learner proposed them
    proposed_slots: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    selected_slot: Optional[datetime] = None
    status: str = Field(default=RequestStatus.PENDING.value)
    payment_status: str = Field(default=PaymentStatus.NOT_APPLICABLE.value)
    total_amount: float = Field(default=0)
    per_class_amount: float = Field(default=0)
    amount_released: float = Field(default=0)
    classes_completed: int = Field(default=0)
    meeting_id: Optional[str] = Field(default=None, index=True)
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    def proposed_datetimes(self) -> list[datetime]:
        return [ensure_utc(datetime.fromisoformat(value)) for value in self.proposed_slots]

    def participants(self) -> tuple[str, str]:
        return (self.from_user_id, self.to_user_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "type": self.type,
            "classes": self.classes,
            "proposed_slots": [value.isoformat() for value in self.proposed_datetimes()],
            "selected_slot": _iso(self.selected_slot),
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": self.total_amount,
            "per_class_amount": self.per_class_amount,
            "amount_released": self.amount_released,
            "classes_completed": self.classes_completed,
            "meeting_id": self.meeting_id,
            "paid_at": _iso(self.paid_at),
            "created_at": _iso(self.created_at),
        }


class Meeting(SQLModel, table=True):
    __tablename__ = "meetings"

    id: str = Field(default_factory=new_id, primary_key=True)
    # unique as a backstop; the scheduler checks the request link first
    request_id: str = Field(index=True, unique=True)
    participant_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, index=True)


class ClassSlot(SQLModel, table=True):
    __tablename__ = "class_slots"

    id: Optional[int] = Field(default=None, primary_key=True)
    meeting_id: str = Field(foreign_key="meetings.id", index=True)
    position: int
    scheduled_at: datetime
    teacher_id: str
    status: str = Field(default=SlotStatus.UPCOMING.value)  # upcoming|completed|cancelled
    meeting_link: str = Field(default="")
    room_id: str = Field(index=True, unique=True)
    duration_min: int = Field(default=DEFAULT_CLASS_DURATION_MIN)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_sec: Optional[int] = None

    def to_dict(self) -> dict:
        # room ids are only handed out through the gated reveal endpoint
        return {
            "index": self.position,
            "scheduled_at": _iso(self.scheduled_at),
            "teacher_id": self.teacher_id,
            "status": self.status,
            "meeting_link": self.meeting_link,
            "duration_min": self.duration_min,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_sec": self.duration_sec,
        }


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    type: str
    message: str = Field(default="")
    related_request_id: Optional[str] = None
    read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "message": self.message,
            "related_request_id": self.related_request_id,
            "read": self.read,
            "created_at": _iso(self.created_at),
        }


def meeting_to_dict(meeting: Meeting, slots: list[ClassSlot]) -> dict:
    return {
        "id": meeting.id,
        "request_id": meeting.request_id,
        "participant_ids": list(meeting.participant_ids),
        "created_at": _iso(meeting.created_at),
        "classes": [slot.to_dict() for slot in slots],
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None
