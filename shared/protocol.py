"""Signaling protocol primitives shared between server and client.

Signaling runs over a single WebSocket per participant. Every frame is a JSON
text message carrying an event name, a data object and, for requests that
expect a reply, an ``ack`` number echoed back by the server. This module keeps
the envelope and the event catalogue in one place so both halves stay in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json


class SignalEvent(str, Enum):
    """Events exchanged over the signaling WebSocket."""

    WELCOME = "welcome"
    JOIN_ROOM = "join-room"
    PEERS = "peers"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    SIGNAL = "signal"
    CALL_STARTED = "call-started"
    CALL_ENDED = "call-ended"
    ACK = "ack"
    ERROR = "error"


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a signaling envelope."""


class SignalEnvelope(TypedDict, total=False):
    """Generic representation of a signaling frame."""

    event: str
    data: Dict[str, Any]
    ack: int


def encode_signal_message(event: SignalEvent, data: Dict[str, Any], *, ack: Optional[int] = None) -> str:
    """Serialize a signaling frame as compact JSON text."""

    envelope: SignalEnvelope = {
        "event": event.value,
        "data": data,
    }
    if ack is not None:
        envelope["ack"] = ack
    return json.dumps(envelope, separators=(",", ":"), default=str)


def decode_signal_message(text: str) -> tuple[SignalEvent, Dict[str, Any], Optional[int]]:
    """Parse a signaling frame into ``(event, data, ack)``.

    Unknown events and non-object payloads raise :class:`ProtocolError`; the
    ``signal`` payload inside ``data`` is never inspected.
    """

    try:
        envelope = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("frame is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise ProtocolError("frame must be a JSON object")
    try:
        event = SignalEvent(envelope.get("event"))
    except ValueError as exc:
        raise ProtocolError(f"unknown event {envelope.get('event')!r}") from exc
    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolError("data must be a JSON object")
    ack = envelope.get("ack")
    if ack is not None and not isinstance(ack, int):
        raise ProtocolError("ack must be an integer")
    return event, data, ack


@dataclass(slots=True)
class PeerInfo:
    """Announces a connection that joined a room."""

    connection_id: str
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"connection_id": self.connection_id}
        if self.user_id is not None:
            data["user_id"] = self.user_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerInfo":
        return cls(
            connection_id=str(data["connection_id"]),
            user_id=data.get("user_id"),
        )


@dataclass(slots=True)
class CallBoundary:
    """Payload of ``call-started`` / ``call-ended`` frames sent by clients."""

    room_id: str
    meeting_id: Optional[str] = None
    class_index: Optional[int] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"room_id": self.room_id}
        if self.meeting_id is not None:
            data["meeting_id"] = self.meeting_id
        if self.class_index is not None:
            data["class_index"] = self.class_index
        if self.start_at is not None:
            data["start_at"] = self.start_at
        if self.end_at is not None:
            data["end_at"] = self.end_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallBoundary":
        class_index = data.get("class_index")
        return cls(
            room_id=str(data["room_id"]),
            meeting_id=data.get("meeting_id"),
            class_index=class_index if isinstance(class_index, int) else None,
            start_at=data.get("start_at"),
            end_at=data.get("end_at"),
        )


DEFAULT_HTTP_PORT = 5000
SIGNALING_PATH = "/ws/signaling"
ROOM_GRACE_SECONDS = 5 * 60.0
DEFAULT_CLASS_DURATION_MIN = 60
POLICY_VIOLATION_CLOSE_CODE = 1008
