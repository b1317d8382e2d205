from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.protocol import (
    POLICY_VIOLATION_CLOSE_CODE,
    CallBoundary,
    PeerInfo,
    ProtocolError,
    SignalEvent,
    decode_signal_message,
    encode_signal_message,
)

from .auth import TokenVerifier
from .errors import AuthenticationError
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)

RoomAuthorizer = Callable[[str, str], Union[Awaitable[bool], bool]]


@dataclass(slots=True)
class SignalingConnection:
    connection_id: str
    user_id: str
    websocket: WebSocket
    connected_at: float = field(default_factory=lambda: time.time())
    frames_received: int = 0
    frames_sent: int = 0

    async def send(self, event: SignalEvent, data: Dict[str, object], *, ack: Optional[int] = None) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        await self.websocket.send_text(encode_signal_message(event, data, ack=ack))
        self.frames_sent += 1


class SignalingHub:
    """Relays WebRTC negotiation between peers sharing a room.

    Payloads under ``signal`` are forwarded verbatim and never inspected. Room
    membership lives in the injected :class:`RoomRegistry`; this class only
    owns the live sockets.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        verifier: TokenVerifier,
        *,
        room_authorizer: Optional[RoomAuthorizer] = None,
    ) -> None:
        self._registry = registry
        self._verifier = verifier
        self._room_authorizer = room_authorizer
        self._connections: Dict[str, SignalingConnection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_connection(self, connection_id: str) -> Optional[SignalingConnection]:
        return self._connections.get(connection_id)

    async def serve(self, websocket: WebSocket) -> None:
        token = websocket.query_params.get("token") or _bearer_token(websocket.headers.get("authorization"))
        try:
            user_id = self._verifier.verify(token)
        except AuthenticationError as exc:
            logger.warning("Rejected signaling connection from %s: %s", websocket.client, exc.message)
            await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason=exc.message)
            return

        await websocket.accept()
        connection = SignalingConnection(connection_id=uuid.uuid4().hex, user_id=user_id, websocket=websocket)
        self._connections[connection.connection_id] = connection
        logger.info("Signaling connection %s opened for user %s", connection.connection_id, user_id)
        try:
            await connection.send(
                SignalEvent.WELCOME,
                {"connection_id": connection.connection_id, "user_id": user_id},
            )
            while True:
                text = await websocket.receive_text()
                connection.frames_received += 1
                try:
                    event, data, ack = decode_signal_message(text)
                except ProtocolError as exc:
                    await connection.send(SignalEvent.ERROR, {"reason": str(exc)})
                    continue
                await self._handle_message(connection, event, data, ack)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error while handling signaling connection %s", connection.connection_id)
        finally:
            await self._disconnect(connection)

    async def disconnect_all(self, *, code: int = 1001) -> None:
        waiters = []
        for connection in list(self._connections.values()):
            if connection.websocket.application_state == WebSocketState.CONNECTED:
                waiters.append(connection.websocket.close(code=code))
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    async def broadcast(
        self,
        room_id: str,
        event: SignalEvent,
        data: Dict[str, object],
        *,
        exclude: Iterable[str] = (),
    ) -> None:
        excluded = set(exclude)
        targets = [
            self._connections[member]
            for member in self._registry.members(room_id)
            if member not in excluded and member in self._connections
        ]
        await self._send_many(targets, event, data)

    async def send_to(self, connection_id: str, event: SignalEvent, data: Dict[str, object]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.send(event, data)
        except Exception:
            logger.exception("Failed to send %s to %s", event.value, connection_id)
            return False
        return True

    async def _handle_message(
        self,
        connection: SignalingConnection,
        event: SignalEvent,
        data: dict,
        ack: Optional[int],
    ) -> None:
        if event == SignalEvent.JOIN_ROOM:
            await self._join_room(connection, data, ack)
            return

        if event == SignalEvent.SIGNAL:
            target = data.get("to")
            signal = data.get("signal")
            if not target or signal is None:
                logger.debug("Dropped incomplete signal from %s", connection.connection_id)
                return
            delivered = await self.send_to(
                str(target),
                SignalEvent.SIGNAL,
                {"from": connection.connection_id, "signal": signal},
            )
            if not delivered:
                logger.debug("Signal from %s to unknown connection %s dropped", connection.connection_id, target)
            return

        if event == SignalEvent.CALL_STARTED:
            if not data.get("room_id"):
                return
            boundary = CallBoundary.from_dict(data)
            started_at = self._registry.mark_call_started(
                boundary.room_id,
                meeting_id=boundary.meeting_id,
                class_index=boundary.class_index,
            )
            if started_at is not None:
                await self.broadcast(
                    boundary.room_id,
                    SignalEvent.CALL_STARTED,
                    {"room_id": boundary.room_id, "started_at": started_at.isoformat()},
                )
            if ack is not None:
                recorded = self._registry.call_started_at(boundary.room_id)
                await connection.send(
                    SignalEvent.ACK,
                    {"ok": True, "started_at": recorded.isoformat() if recorded else None},
                    ack=ack,
                )
            return

        if event == SignalEvent.CALL_ENDED:
            room_id = data.get("room_id")
            if not room_id:
                return
            self._registry.mark_call_ended(str(room_id))
            await self.broadcast(str(room_id), SignalEvent.CALL_ENDED, data)
            logger.info("Call ended in room %s", room_id)
            return

        logger.debug("Unhandled signaling event %s from %s", event.value, connection.connection_id)

    async def _join_room(self, connection: SignalingConnection, data: dict, ack: Optional[int]) -> None:
        room_id = str(data.get("room_id") or "").strip()
        if not room_id:
            await self._reply(connection, ack, {"error": "room_id required"})
            return
        if self._room_authorizer is not None:
            allowed = self._room_authorizer(connection.user_id, room_id)
            if asyncio.iscoroutine(allowed):
                allowed = await allowed
            if not allowed:
                logger.warning("User %s refused entry to room %s", connection.user_id, room_id)
                await self._reply(connection, ack, {"error": "Not allowed"})
                return

        peers = self._registry.join(room_id, connection.connection_id)
        await connection.send(SignalEvent.PEERS, {"room_id": room_id, "peers": peers})
        await self.broadcast(
            room_id,
            SignalEvent.PEER_JOINED,
            PeerInfo(connection_id=connection.connection_id, user_id=connection.user_id).to_dict(),
            exclude={connection.connection_id},
        )
        await self._reply(connection, ack, {"ok": True, "room_id": room_id, "peers": peers})

    async def _reply(self, connection: SignalingConnection, ack: Optional[int], data: Dict[str, object]) -> None:
        if ack is None:
            if "error" in data:
                await connection.send(SignalEvent.ERROR, {"reason": data["error"]})
            return
        await connection.send(SignalEvent.ACK, data, ack=ack)

    async def _disconnect(self, connection: SignalingConnection) -> None:
        self._connections.pop(connection.connection_id, None)
        departures = self._registry.leave_all(connection.connection_id)
        for room_id, remaining in departures:
            targets = [self._connections[member] for member in remaining if member in self._connections]
            await self._send_many(targets, SignalEvent.PEER_LEFT, {"connection_id": connection.connection_id})
        logger.info(
            "Signaling connection %s closed (%d rooms left)",
            connection.connection_id,
            len(departures),
        )

    async def _send_many(
        self,
        targets: list[SignalingConnection],
        event: SignalEvent,
        data: Dict[str, object],
    ) -> None:
        if not targets:
            return
        results = await asyncio.gather(
            *(target.send(event, data) for target in targets),
            return_exceptions=True,
        )
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Failed to deliver %s to %s: %s", event.value, target.connection_id, result)


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None
