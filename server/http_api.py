from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional, Sequence, Union

from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlmodel import Session

from shared.join_window import JOIN_AFTER, JOIN_BEFORE
from shared.protocol import SIGNALING_PATH

from .auth import TokenVerifier
from .database import session_dependency
from .errors import AuthorizationError, NotFoundError, SkillSwapError, ValidationError
from .events import EventBus
from .meeting_service import MeetingService
from .models import meeting_to_dict
from .repositories import InstructorsRepository, MeetingsRepository, NotificationsRepository, RequestsRepository
from .request_service import RequestService
from .room_registry import RoomRegistry
from .scheduler import MeetingScheduler, parse_datetime
from .signaling import SignalingHub

logger = logging.getLogger(__name__)

TimeValue = Union[str, float]


class CreateRequestBody(BaseModel):
    to_user_id: Optional[str] = None
    type: Optional[str] = None
    classes: Optional[int] = None
    proposed_slots: Optional[list[str]] = None


class SelectSlotBody(BaseModel):
    selected_slot: Optional[str] = None


class ScheduleBody(BaseModel):
    interval_days: Optional[int] = None
    class_dates: Optional[list[str]] = None


class PricingBody(BaseModel):
    price4: float = Field(ge=0)
    price6: float = Field(ge=0)


class CompleteClassBody(BaseModel):
    start_at: Optional[TimeValue] = None
    end_at: Optional[TimeValue] = None


class SkillSwapApi:
    """FastAPI application serving the request, meeting and signaling endpoints."""

    def __init__(
        self,
        engine: Engine,
        verifier: TokenVerifier,
        *,
        registry: Optional[RoomRegistry] = None,
        events: Optional[EventBus] = None,
        join_before: timedelta = JOIN_BEFORE,
        join_after: timedelta = JOIN_AFTER,
        enforce_room_membership: bool = False,
        cors_origins: Sequence[str] = (),
    ) -> None:
        self.engine = engine
        self.verifier = verifier
        self.registry = registry or RoomRegistry()
        self.events = events or EventBus()
        self.scheduler = MeetingScheduler(engine, self.events)
        self.requests = RequestService(self.scheduler, self.events)
        self.meetings = MeetingService(
            self.events,
            registry=self.registry,
            join_before=join_before,
            join_after=join_after,
        )
        self.hub = SignalingHub(
            self.registry,
            verifier,
            room_authorizer=self._authorize_room if enforce_room_membership else None,
        )
        self._app = FastAPI(title="SkillSwap")
        if cors_origins:
            self._app.add_middleware(
                CORSMiddleware,
                allow_origins=list(cors_origins),
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )

        get_session = session_dependency(engine)
        bearer = HTTPBearer(auto_error=False)

        def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> str:
            return self.verifier.verify(credentials.credentials if credentials else None)

        @self._app.exception_handler(SkillSwapError)
        async def skillswap_error(request: Request, exc: SkillSwapError) -> JSONResponse:
            if exc.status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

        @self._app.exception_handler(Exception)
        async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
            return JSONResponse(status_code=500, content={"message": "Server error"})

        @self._app.get("/healthz")
        async def healthz() -> dict:
            return {
                "status": "ok",
                "rooms": len(self.registry),
                "connections": self.hub.connection_count,
                "timestamp": time.time(),
            }

        # requests

        @self._app.post("/api/requests", status_code=201)
        def create_request(
            body: CreateRequestBody,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            request = self.requests.create_request(
                session,
                user_id,
                to_user_id=body.to_user_id or "",
                request_type=body.type or "",
                classes=body.classes or 0,
                proposed_slots=body.proposed_slots or [],
            )
            return request.to_dict()

        @self._app.get("/api/requests/incoming")
        def incoming_requests(user_id: str = Depends(current_user), session: Session = Depends(get_session)) -> list:
            return [request.to_dict() for request in RequestsRepository(session).list_incoming(user_id)]

        @self._app.get("/api/requests/sent")
        def sent_requests(user_id: str = Depends(current_user), session: Session = Depends(get_session)) -> list:
            return [request.to_dict() for request in RequestsRepository(session).list_sent(user_id)]

        @self._app.get("/api/requests/{request_id}")
        def get_request(
            request_id: str,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            return self.requests.get_for_participant(session, user_id, request_id).to_dict()

        @self._app.put("/api/requests/{request_id}/select-slot")
        def select_slot(
            request_id: str,
            body: SelectSlotBody,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            request, meeting = self.requests.select_slot(session, user_id, request_id, body.selected_slot or "")
            return {
                "message": "Slot selected",
                "request": request.to_dict(),
                "meeting": self._meeting_payload(session, meeting),
            }

        @self._app.put("/api/requests/{request_id}/reject")
        def reject_request(
            request_id: str,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            request = self.requests.reject(session, user_id, request_id)
            return {"message": "Request rejected", "request": request.to_dict()}

        @self._app.post("/api/requests/{request_id}/schedule")
        def schedule_request(
            request_id: str,
            body: Optional[ScheduleBody] = None,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            body = body or ScheduleBody()
            meeting = self.requests.schedule(
                session,
                user_id,
                request_id,
                interval_days=body.interval_days,
                class_dates=body.class_dates,
            )
            request = self.requests.get_for_participant(session, user_id, request_id)
            session.refresh(request)
            return {
                "message": "Meeting created" if meeting is not None else "Meeting already exists",
                "request": request.to_dict(),
                "meeting": self._meeting_payload(session, meeting),
            }

        @self._app.post("/api/payment/{request_id}/pay")
        def pay(
            request_id: str,
            body: Optional[ScheduleBody] = None,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            body = body or ScheduleBody()
            request, meeting = self.requests.pay(
                session,
                user_id,
                request_id,
                interval_days=body.interval_days,
                class_dates=body.class_dates,
            )
            return {
                "message": "Payment successful",
                "request": request.to_dict(),
                "meeting": self._meeting_payload(session, meeting),
            }

        @self._app.put("/api/instructors/me/pricing")
        def set_pricing(
            body: PricingBody,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            instructor = InstructorsRepository(session).upsert_pricing(user_id, price4=body.price4, price6=body.price6)
            logger.info("Instructor %s updated pricing", user_id)
            return {"id": instructor.id, "price4": instructor.price4, "price6": instructor.price6}

        # meetings; the literal paths are registered before /{meeting_id}

        @self._app.get("/api/meetings/user/{target_user_id}")
        def meetings_for_user(
            target_user_id: str,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> list:
            return self.meetings.list_for_user(session, user_id, target_user_id)

        @self._app.get("/api/meetings/room-info/{room_id}")
        def room_info(
            room_id: str,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            return self.meetings.resolve_room(session, user_id, room_id)

        @self._app.get("/api/meetings/{meeting_id}/room/{index}")
        def reveal_room(
            meeting_id: str,
            index: int,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            return self.meetings.reveal_room(session, user_id, meeting_id, index)

        @self._app.put("/api/meetings/{meeting_id}/classes/{index}/complete")
        def complete_class(
            meeting_id: str,
            index: int,
            body: Optional[CompleteClassBody] = None,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            body = body or CompleteClassBody()
            try:
                start_at = parse_datetime(body.start_at) if body.start_at is not None else None
                end_at = parse_datetime(body.end_at) if body.end_at is not None else None
            except ValidationError as exc:
                raise ValidationError("Invalid start/end times") from exc
            return self.meetings.complete_class(
                session,
                user_id,
                meeting_id,
                index,
                start_at=start_at,
                end_at=end_at,
            )

        @self._app.get("/api/meetings/{meeting_id}")
        def get_meeting(
            meeting_id: str,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            return self.meetings.get_meeting(session, user_id, meeting_id)

        # notifications

        @self._app.get("/api/notifications")
        def notifications(user_id: str = Depends(current_user), session: Session = Depends(get_session)) -> dict:
            repo = NotificationsRepository(session)
            return {
                "notifications": [item.to_dict() for item in repo.list_for_user(user_id)],
                "unread": repo.unread_count(user_id),
            }

        @self._app.put("/api/notifications/{notification_id}/read")
        def mark_notification_read(
            notification_id: int,
            user_id: str = Depends(current_user),
            session: Session = Depends(get_session),
        ) -> dict:
            repo = NotificationsRepository(session)
            notification = repo.get(notification_id)
            if notification is None:
                raise NotFoundError("Notification not found")
            if notification.user_id != user_id:
                raise AuthorizationError("Not allowed")
            return repo.mark_read(notification).to_dict()

        @self._app.websocket(SIGNALING_PATH)
        async def signaling(websocket: WebSocket) -> None:
            await self.hub.serve(websocket)

    @property
    def app(self) -> FastAPI:
        return self._app

    def _meeting_payload(self, session: Session, meeting) -> Optional[dict]:
        if meeting is None:
            return None
        return meeting_to_dict(meeting, MeetingsRepository(session).slots(meeting.id))

    async def _authorize_room(self, user_id: str, room_id: str) -> bool:
        def check() -> bool:
            with Session(self.engine) as session:
                return self.meetings.is_room_participant(session, user_id, room_id)

        return await asyncio.to_thread(check)
