from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from shared.join_window import utcnow
from shared.protocol import DEFAULT_CLASS_DURATION_MIN, CallBoundary, SignalEvent

from .api_client import MeetingsApiError
from .media import LocalMedia, MediaSource, MediaUnavailableError
from .peer import HandshakePeer, PeerFactory, PeerLink
from .signaling_client import DisconnectCallback, MessageCallback, SignalingError

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Failed to start the call. Check your network connection and try again."


class CallState(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring-media"
    CONNECTING = "connecting"
    WAITING_FOR_PEER = "waiting-for-peer"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


_TRANSITIONS: Dict[CallState, frozenset[CallState]] = {
    CallState.IDLE: frozenset({CallState.ACQUIRING_MEDIA, CallState.ENDED}),
    CallState.ACQUIRING_MEDIA: frozenset({CallState.CONNECTING, CallState.ENDED}),
    CallState.CONNECTING: frozenset({CallState.WAITING_FOR_PEER, CallState.ENDED}),
    CallState.WAITING_FOR_PEER: frozenset({CallState.ACTIVE, CallState.ENDED}),
    CallState.ACTIVE: frozenset({CallState.ENDING, CallState.ENDED}),
    CallState.ENDING: frozenset({CallState.ENDED}),
    CallState.ENDED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


class SignalingLink(Protocol):
    async def connect(self) -> str: ...

    async def join_room(self, room_id: str) -> list[str]: ...

    async def send_signal(self, to: str, signal: dict) -> None: ...

    async def call_started(self, boundary: CallBoundary) -> None: ...

    async def call_ended(self, boundary: CallBoundary) -> None: ...

    async def close(self) -> None: ...


class CompletionReporter(Protocol):
    async def complete_class(
        self,
        meeting_id: str,
        index: int,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> Dict[str, Any]: ...


SignalingFactory = Callable[[MessageCallback, DisconnectCallback], SignalingLink]
StateCallback = Callable[[CallState], None]


@dataclass(slots=True)
class CallDetails:
    room_id: str
    meeting_id: str
    class_index: int
    duration_min: int = DEFAULT_CLASS_DURATION_MIN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallDetails":
        return cls(
            room_id=str(data["room_id"]),
            meeting_id=str(data["meeting_id"]),
            class_index=int(data["class_index"]),
            duration_min=int(data.get("duration_min") or DEFAULT_CLASS_DURATION_MIN),
        )


@dataclass(slots=True)
class CallResult:
    duration_sec: int
    start_at: datetime
    end_at: datetime
    reported: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_sec": self.duration_sec,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
            "reported": self.reported,
        }


class CallSession:
    """One attempt at a class call, from device capture to completion report.

    ``run`` takes the session to ``waiting-for-peer``; the first remote stream
    makes it ``active`` and starts the countdown. Every way out (countdown,
    ``end_now``, ``close``, a failed setup step) goes through ``_finish``.
    """

    def __init__(
        self,
        details: CallDetails,
        *,
        media_source: MediaSource,
        signaling_factory: SignalingFactory,
        meetings: CompletionReporter,
        peer_factory: PeerFactory = HandshakePeer,
        call_duration: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self._details = details
        self._media_source = media_source
        self._signaling_factory = signaling_factory
        self._meetings = meetings
        self._peer_factory = peer_factory
        self._call_duration = float(call_duration) if call_duration is not None else details.duration_min * 60.0
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CallState.IDLE
        self._media: Optional[LocalMedia] = None
        self._signaling: Optional[SignalingLink] = None
        self._peers: Dict[str, PeerLink] = {}
        self._countdown_task: Optional[asyncio.Task[None]] = None
        self._started_at: Optional[datetime] = None
        self._result: Optional[CallResult] = None
        self._error: Optional[str] = None
        self._finishing = False
        self._ended = asyncio.Event()

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def result(self) -> Optional[CallResult]:
        return self._result

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def media(self) -> Optional[LocalMedia]:
        return self._media

    @property
    def remote_connected(self) -> bool:
        return bool(self._peers) and self._state == CallState.ACTIVE

    @property
    def peer_ids(self) -> list[str]:
        return list(self._peers)

    def time_left(self) -> Optional[float]:
        if self._started_at is None:
            return None
        if self._state not in (CallState.ACTIVE, CallState.ENDING):
            return 0.0
        elapsed = (self._clock() - self._started_at).total_seconds()
        return max(0.0, self._call_duration - elapsed)

    def set_audio_enabled(self, enabled: bool) -> None:
        if self._media is not None:
            self._media.set_audio_enabled(enabled)

    def set_video_enabled(self, enabled: bool) -> None:
        if self._media is not None:
            self._media.set_video_enabled(enabled)

    async def run(self) -> CallState:
        self._transition(CallState.ACQUIRING_MEDIA)
        try:
            media = await self._media_source.acquire()
        except MediaUnavailableError as exc:
            logger.warning("Local media unavailable: %s", exc)
            await self._finish(error=str(exc))
            return self._state
        except Exception:
            logger.exception("Unexpected error while acquiring local media")
            await self._finish(error=RETRY_MESSAGE)
            return self._state
        self._media = media
        if self._finishing:
            # closed while the devices were opening
            self._release_media()
            return self._state

        self._transition(CallState.CONNECTING)
        try:
            self._signaling = self._signaling_factory(self._on_signal, self._on_signaling_lost)
            await self._signaling.connect()
            if self._finishing:
                await self._close_signaling()
                return self._state
            peers = await self._signaling.join_room(self._details.room_id)
        except (SignalingError, OSError) as exc:
            logger.warning("Could not join room %s: %s", self._details.room_id, exc)
            await self._finish(error=RETRY_MESSAGE)
            return self._state
        except Exception:
            logger.exception("Unexpected error while joining room %s", self._details.room_id)
            await self._finish(error=RETRY_MESSAGE)
            return self._state
        if self._finishing:
            return self._state

        self._transition(CallState.WAITING_FOR_PEER)
        logger.info("Joined room with %d peer(s) present", len(peers))
        for remote_id in peers:
            await self._open_peer(remote_id, initiator=True)
        return self._state

    async def wait(self) -> Optional[CallResult]:
        await self._ended.wait()
        return self._result

    async def end_now(self) -> Optional[CallResult]:
        """Finish the call early; before it is active this is the same as ``close``."""
        if self._state == CallState.ACTIVE:
            await self._end_call()
        else:
            await self.close()
        return self._result

    async def close(self) -> None:
        """Tear down without reporting completion. Safe to call repeatedly."""
        await self._finish()

    async def _on_signal(self, event: SignalEvent, data: dict) -> None:
        if self._finishing:
            return
        if event == SignalEvent.PEER_JOINED:
            remote_id = str(data.get("connection_id") or "")
            if remote_id:
                await self._open_peer(remote_id, initiator=False)
        elif event == SignalEvent.SIGNAL:
            remote_id = str(data.get("from") or "")
            signal = data.get("signal")
            if not remote_id or not isinstance(signal, dict):
                return
            peer = self._peers.get(remote_id)
            if peer is None:
                logger.debug("Signal from unknown peer %s; creating non-initiator", remote_id)
                peer = await self._open_peer(remote_id, initiator=False)
            if peer is not None:
                try:
                    await peer.handle_signal(signal)
                except Exception:
                    logger.exception("Peer %s failed to handle signal", remote_id)
        elif event == SignalEvent.PEER_LEFT:
            remote_id = str(data.get("connection_id") or "")
            peer = self._peers.pop(remote_id, None)
            if peer is not None:
                await self._close_peer(peer)
                logger.info("Peer %s left (%d remaining)", remote_id, len(self._peers))
        elif event == SignalEvent.CALL_STARTED:
            logger.debug("Relay recorded call start at %s", data.get("started_at"))
        elif event == SignalEvent.CALL_ENDED:
            logger.info("Call ended by another participant")
        elif event == SignalEvent.ERROR:
            logger.warning("Relay reported an error: %s", data.get("reason"))

    async def _on_signaling_lost(self, reason: Optional[str]) -> None:
        if self._finishing:
            return
        if self._state == CallState.ACTIVE:
            # peer media does not depend on the relay; keep the countdown running
            logger.warning("Signaling connection lost during the call (%s)", reason)
            return
        logger.warning("Signaling connection lost before the call started (%s)", reason)
        await self._finish(error=RETRY_MESSAGE)

    async def _open_peer(self, remote_id: str, *, initiator: bool) -> Optional[PeerLink]:
        if remote_id in self._peers:
            logger.debug("Peer already exists for %s", remote_id)
            return self._peers[remote_id]
        if self._media is None or self._signaling is None:
            return None
        peer = self._peer_factory(remote_id, initiator, self._media, self._send_signal, self._on_remote_stream)
        self._peers[remote_id] = peer
        try:
            await peer.start()
        except Exception:
            logger.exception("Failed to start peer link to %s", remote_id)
            self._peers.pop(remote_id, None)
            await self._close_peer(peer)
            return None
        return peer

    async def _send_signal(self, to: str, signal: dict) -> None:
        if self._signaling is None:
            return
        try:
            await self._signaling.send_signal(to, signal)
        except SignalingError as exc:
            logger.warning("Could not relay signal to %s: %s", to, exc)

    async def _on_remote_stream(self, remote_id: str) -> None:
        if self._state != CallState.WAITING_FOR_PEER:
            return
        self._transition(CallState.ACTIVE)
        self._started_at = self._clock()
        logger.info("Remote stream from %s; call active", remote_id)
        if self._signaling is not None:
            try:
                await self._signaling.call_started(self._boundary())
            except SignalingError as exc:
                logger.warning("Could not announce call start: %s", exc)
        self._schedule_countdown()

    def _schedule_countdown(self) -> None:
        self._cancel_countdown()
        delay = self._call_duration

        async def _wait_and_end() -> None:
            try:
                await asyncio.sleep(delay)
                await self._end_call()
            except asyncio.CancelledError:
                return

        task = asyncio.get_running_loop().create_task(_wait_and_end())
        task.add_done_callback(lambda _: setattr(self, "_countdown_task", None))
        self._countdown_task = task

    def _cancel_countdown(self) -> None:
        task = self._countdown_task
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is current:
            self._countdown_task = None
            return
        if not task.done():
            task.cancel()
        self._countdown_task = None

    async def _end_call(self) -> None:
        if self._state != CallState.ACTIVE or self._finishing:
            return
        self._transition(CallState.ENDING)
        start_at = self._started_at or self._clock()
        end_at = self._clock()
        duration_sec = max(0, int((end_at - start_at).total_seconds()))
        reported = False
        try:
            reply = await self._meetings.complete_class(
                self._details.meeting_id,
                self._details.class_index,
                start_at=start_at,
                end_at=end_at,
            )
            if isinstance(reply, dict) and reply.get("duration_sec") is not None:
                duration_sec = int(reply["duration_sec"])
            reported = True
        except (MeetingsApiError, OSError) as exc:
            logger.warning("Completion report failed, assuming the full class length: %s", exc)
            duration_sec = int(self._details.duration_min * 60)
        except Exception:
            logger.exception("Unexpected error while reporting completion, assuming the full class length")
            duration_sec = int(self._details.duration_min * 60)
        finally:
            self._result = CallResult(duration_sec=duration_sec, start_at=start_at, end_at=end_at, reported=reported)
            await self._finish()

    async def _finish(self, *, error: Optional[str] = None) -> None:
        if self._finishing:
            return
        self._finishing = True
        if error is not None:
            self._error = error
        self._cancel_countdown()

        peers = list(self._peers.values())
        self._peers.clear()
        for peer in peers:
            await self._close_peer(peer)

        self._release_media()

        if self._signaling is not None and self._started_at is not None:
            try:
                await self._signaling.call_ended(self._boundary())
            except SignalingError as exc:
                logger.warning("Could not announce call end: %s", exc)
        await self._close_signaling()

        self._transition(CallState.ENDED)
        self._ended.set()
        logger.info("Call session ended%s", f" ({self._error})" if self._error else "")

    async def _close_peer(self, peer: PeerLink) -> None:
        try:
            await peer.close()
        except Exception:
            logger.exception("Failed to close peer link to %s", peer.remote_id)

    def _release_media(self) -> None:
        if self._media is None:
            return
        try:
            self._media.release()
        except Exception:
            logger.exception("Failed to release local media")

    async def _close_signaling(self) -> None:
        if self._signaling is None:
            return
        try:
            await self._signaling.close()
        except Exception:
            logger.exception("Failed to close signaling connection")

    def _boundary(self) -> CallBoundary:
        end_at = self._result.end_at.isoformat() if self._result else None
        return CallBoundary(
            room_id=self._details.room_id,
            meeting_id=self._details.meeting_id,
            class_index=self._details.class_index,
            start_at=self._started_at.isoformat() if self._started_at else None,
            end_at=end_at,
        )

    def _transition(self, target: CallState) -> None:
        if target == self._state:
            return
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransition(f"{self._state.value} -> {target.value}")
        logger.debug("Call state %s -> %s", self._state.value, target.value)
        self._state = target
        if self._on_state_change is not None:
            try:
                self._on_state_change(target)
            except Exception:
                logger.exception("State change callback failed")
