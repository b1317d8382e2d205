from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlmodel import Session

from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .events import DomainEvent, EventBus
from .models import (
    ALLOWED_CLASS_COUNTS,
    ClassRequest,
    Meeting,
    NotificationType,
    PaymentStatus,
    RequestStatus,
    RequestType,
)
from .repositories import InstructorsRepository, RequestsRepository
from .scheduler import DEFAULT_INTERVAL_DAYS, DateLike, MeetingScheduler, parse_datetime

logger = logging.getLogger(__name__)


class RequestService:
    """Request lifecycle: submission, slot selection, rejection and payment."""

    def __init__(self, scheduler: MeetingScheduler, events: EventBus) -> None:
        self._scheduler = scheduler
        self._events = events

    def create_request(
        self,
        session: Session,
        user_id: str,
        *,
        to_user_id: str,
        request_type: str,
        classes: int,
        proposed_slots: Sequence[DateLike],
    ) -> ClassRequest:
        if not to_user_id or not request_type or not classes or not proposed_slots:
            raise ValidationError("Missing required fields")
        if user_id == to_user_id:
            raise ValidationError("Cannot request yourself")
        if request_type not in (RequestType.PAID.value, RequestType.EXCHANGE.value):
            raise ValidationError("type must be 'paid' or 'exchange'")
        if classes not in ALLOWED_CLASS_COUNTS:
            raise ValidationError("classes must be 4 or 6")
        slots = [parse_datetime(value) for value in proposed_slots]

        total_amount = 0.0
        per_class_amount = 0.0
        if request_type == RequestType.PAID.value:
            instructor = InstructorsRepository(session).get(to_user_id)
            if instructor is None:
                raise NotFoundError("Teacher not found")
            total_amount = instructor.package_price(classes)
            per_class_amount = total_amount / classes if total_amount else 0.0

        request = ClassRequest(
            from_user_id=user_id,
            to_user_id=to_user_id,
            type=request_type,
            classes=classes,
            proposed_slots=[slot.isoformat() for slot in slots],
            status=RequestStatus.PENDING.value,
            payment_status=(
                PaymentStatus.NOT_PAID.value if request_type == RequestType.PAID.value else PaymentStatus.NOT_APPLICABLE.value
            ),
            total_amount=total_amount,
            per_class_amount=per_class_amount,
        )
        session.add(request)
        self._events.emit(
            session,
            DomainEvent(
                type=NotificationType.NEW_REQUEST,
                recipients=(to_user_id,),
                message=f"You have a new {request_type} request from a learner.",
                related_request_id=request.id,
            ),
        )
        session.commit()
        session.refresh(request)
        logger.info("Request %s created by %s for %s", request.id, user_id, to_user_id)
        return request

    def get_for_participant(self, session: Session, user_id: str, request_id: str) -> ClassRequest:
        request = RequestsRepository(session).get(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if user_id not in request.participants():
            raise AuthorizationError("Not allowed")
        return request

    def select_slot(
        self,
        session: Session,
        user_id: str,
        request_id: str,
        selected_slot: DateLike,
    ) -> tuple[ClassRequest, Optional[Meeting]]:
        if not selected_slot:
            raise ValidationError("selected_slot required")
        slot = parse_datetime(selected_slot)
        repo = RequestsRepository(session)
        request = repo.get(request_id)
        if request is None or slot not in request.proposed_datetimes():
            raise ConflictError("Slot selection failed: maybe already handled or slot invalid", status_code=400)

        payment_status = (
            PaymentStatus.NOT_PAID.value if request.type == RequestType.PAID.value else PaymentStatus.NOT_APPLICABLE.value
        )
        if not repo.accept_pending(request_id, user_id, slot, payment_status):
            session.rollback()
            raise ConflictError("Slot selection failed: maybe already handled or slot invalid", status_code=400)

        self._events.emit(
            session,
            DomainEvent(
                type=NotificationType.REQUEST_ACCEPTED,
                recipients=(request.from_user_id,),
                message=f"Your request was accepted. Selected slot: {slot.isoformat()}",
                related_request_id=request.id,
            ),
        )
        session.commit()

        meeting = None
        if request.type == RequestType.EXCHANGE.value:
            meeting = self._schedule_after_commit(request_id)
        return repo.refresh(request), meeting

    def reject(self, session: Session, user_id: str, request_id: str) -> ClassRequest:
        request = RequestsRepository(session).get(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if request.to_user_id != user_id:
            raise AuthorizationError("Not allowed")
        if request.status != RequestStatus.PENDING.value:
            raise ConflictError(f"Request is already {request.status}")
        request.status = RequestStatus.REJECTED.value
        session.add(request)
        self._events.emit(
            session,
            DomainEvent(
                type=NotificationType.REQUEST_REJECTED,
                recipients=(request.from_user_id,),
                message="Your request was rejected by the instructor.",
                related_request_id=request.id,
            ),
        )
        session.commit()
        session.refresh(request)
        logger.info("Request %s rejected by %s", request_id, user_id)
        return request

    def pay(
        self,
        session: Session,
        user_id: str,
        request_id: str,
        *,
        interval_days: Optional[int] = None,
        class_dates: Optional[Sequence[DateLike]] = None,
    ) -> tuple[ClassRequest, Optional[Meeting]]:
        """Simulated payment capture followed by meeting creation."""

        repo = RequestsRepository(session)
        request = repo.get(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if request.from_user_id != user_id:
            raise AuthorizationError("Only the requester can make payment")
        if request.type != RequestType.PAID.value:
            raise ValidationError("Payment only required for paid requests")
        if request.status != RequestStatus.ACCEPTED.value:
            raise ValidationError("Request must be accepted before payment")

        if request.payment_status == PaymentStatus.PAID.value and not request.meeting_id:
            # payment went through earlier but scheduling failed; retry it only
            logger.info("Retrying meeting creation for paid request %s", request_id)
        else:
            if not repo.mark_paid(request_id, user_id):
                session.rollback()
                raise ValidationError("Request already paid or processed")
            self._events.emit(
                session,
                DomainEvent(
                    type=NotificationType.PAYMENT_DONE,
                    recipients=(request.to_user_id,),
                    message="Learner has completed payment for the request.",
                    related_request_id=request.id,
                ),
            )
            session.commit()

        meeting = self._schedule_after_commit(
            request_id,
            interval_days=interval_days,
            class_dates=class_dates,
        )
        return repo.refresh(request), meeting

    def schedule(
        self,
        session: Session,
        user_id: str,
        request_id: str,
        *,
        interval_days: Optional[int] = None,
        class_dates: Optional[Sequence[DateLike]] = None,
    ) -> Optional[Meeting]:
        """Explicit retry of meeting creation for a ready, unlinked request."""

        request = self.get_for_participant(session, user_id, request_id)
        if request.status != RequestStatus.ACCEPTED.value:
            raise ValidationError("Request must be accepted before scheduling")
        if request.type == RequestType.PAID.value and request.payment_status == PaymentStatus.NOT_PAID.value:
            raise ValidationError("Request must be paid before scheduling")
        return self._scheduler.create_meeting_for_request(
            request_id,
            class_dates=class_dates,
            interval_days=DEFAULT_INTERVAL_DAYS if interval_days is None else interval_days,
        )

    def _schedule_after_commit(
        self,
        request_id: str,
        *,
        interval_days: Optional[int] = None,
        class_dates: Optional[Sequence[DateLike]] = None,
    ) -> Optional[Meeting]:
        # the accepted/paid state is already committed; a failure here leaves
        # the request unlinked and retryable
        try:
            return self._scheduler.create_meeting_for_request(
                request_id,
                class_dates=class_dates,
                interval_days=DEFAULT_INTERVAL_DAYS if interval_days is None else interval_days,
            )
        except Exception:
            logger.exception("Meeting creation failed for request %s", request_id)
            return None
