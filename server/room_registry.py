from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from shared.join_window import utcnow
from shared.protocol import ROOM_GRACE_SECONDS

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RoomState:
    room_id: str
    members: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    meeting_id: Optional[str] = None
    class_index: Optional[int] = None
    ended: bool = False
    expires_at: Optional[float] = None

    def others(self, connection_id: str) -> List[str]:
        return [member for member in self.members if member != connection_id]


class RoomRegistry:
    """Process-local map of room ids to connected signaling peers.

    Every method is synchronous so a mutation can never interleave with another
    event handler. Rooms are created on first join and dropped only after they
    have been empty (or their call has ended) for ``grace_seconds``, which lets a
    quick reconnect find its call start again.
    """

    def __init__(
        self,
        *,
        grace_seconds: float = ROOM_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rooms: Dict[str, RoomState] = {}
        self._grace_seconds = max(0.0, grace_seconds)
        self._clock = clock
        self._event_log: list[dict] = []

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[RoomState]:
        return self._rooms.get(room_id)

    def members(self, room_id: str) -> List[str]:
        room = self._rooms.get(room_id)
        return list(room.members) if room else []

    def call_started_at(self, room_id: str) -> Optional[datetime]:
        room = self._rooms.get(room_id)
        return room.started_at if room else None

    def rooms_for(self, connection_id: str) -> List[str]:
        return [room_id for room_id, room in self._rooms.items() if connection_id in room.members]

    def join(self, room_id: str, connection_id: str) -> List[str]:
        room = self._rooms.get(room_id)
        if room is None:
            room = RoomState(room_id=room_id)
            self._rooms[room_id] = room
            self._record_event("room_created", {"room_id": room_id})
        if room.expires_at is not None and not room.ended:
            room.expires_at = None
        if connection_id not in room.members:
            room.members.append(connection_id)
            self._record_event("peer_joined", {"room_id": room_id, "connection_id": connection_id})
        logger.info("Connection %s joined room %s (%d members)", connection_id, room_id, len(room.members))
        return room.others(connection_id)

    def leave(self, room_id: str, connection_id: str) -> Optional[List[str]]:
        room = self._rooms.get(room_id)
        if room is None or connection_id not in room.members:
            return None
        room.members.remove(connection_id)
        self._record_event("peer_left", {"room_id": room_id, "connection_id": connection_id})
        if not room.members:
            self._schedule_expiry(room)
        return list(room.members)

    def leave_all(self, connection_id: str) -> List[Tuple[str, List[str]]]:
        """Remove a connection from every room it joined.

        Returns ``(room_id, remaining_members)`` for each room that held it.
        """

        departures: List[Tuple[str, List[str]]] = []
        for room_id in self.rooms_for(connection_id):
            remaining = self.leave(room_id, connection_id)
            if remaining is not None:
                departures.append((room_id, remaining))
        return departures

    def mark_call_started(
        self,
        room_id: str,
        *,
        meeting_id: Optional[str] = None,
        class_index: Optional[int] = None,
    ) -> Optional[datetime]:
        """Record the call start once per occupancy.

        Returns the recorded start, or ``None`` if a start was already stored.
        """

        room = self._rooms.get(room_id)
        if room is None:
            room = RoomState(room_id=room_id)
            self._rooms[room_id] = room
            self._schedule_expiry(room)
        if room.started_at is not None:
            return None
        room.started_at = utcnow()
        room.meeting_id = meeting_id or room.meeting_id
        if class_index is not None:
            room.class_index = class_index
        self._record_event("call_started", {"room_id": room_id})
        logger.info("Call started in room %s at %s", room_id, room.started_at.isoformat())
        return room.started_at

    def mark_call_ended(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        room.ended = True
        self._schedule_expiry(room)
        self._record_event("call_ended", {"room_id": room_id})
        return True

    def purge(self, now: Optional[float] = None) -> List[str]:
        current = self._clock() if now is None else now
        expired = [
            room_id
            for room_id, room in self._rooms.items()
            if room.expires_at is not None
            and room.expires_at <= current
            and (room.ended or not room.members)
        ]
        for room_id in expired:
            del self._rooms[room_id]
            self._record_event("room_deleted", {"room_id": room_id})
            logger.info("Dropped idle room %s", room_id)
        return expired

    def snapshot(self) -> dict:
        rooms = []
        for room in self._rooms.values():
            rooms.append(
                {
                    "room_id": room.room_id,
                    "members": list(room.members),
                    "started_at": room.started_at.isoformat() if room.started_at else None,
                    "meeting_id": room.meeting_id,
                    "class_index": room.class_index,
                    "ended": room.ended,
                }
            )
        return {
            "rooms": rooms,
            "room_count": len(rooms),
            "connection_count": len({member for room in self._rooms.values() for member in room.members}),
            "events": list(self._event_log[-100:]),
        }

    def _schedule_expiry(self, room: RoomState) -> None:
        room.expires_at = self._clock() + self._grace_seconds
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        # small margin so the timer never fires just before the deadline
        loop.call_later(self._grace_seconds + 0.001, self.purge)

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        self._event_log.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                "details": details,
            }
        )
        if len(self._event_log) > 1000:
            self._event_log.pop(0)
