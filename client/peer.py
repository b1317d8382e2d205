from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from .media import LocalMedia

logger = logging.getLogger(__name__)

SignalSender = Callable[[str, dict], Awaitable[None]]
RemoteStreamCallback = Callable[[str], Awaitable[None] | None]


class PeerLink(Protocol):
    remote_id: str

    async def start(self) -> None: ...

    async def handle_signal(self, signal: dict) -> None: ...

    async def close(self) -> None: ...


PeerFactory = Callable[[str, bool, LocalMedia, SignalSender, RemoteStreamCallback], PeerLink]


class HandshakePeer:
    """Offer/answer exchange over the relay with no media transport.

    The initiator sends an ``offer`` describing its local tracks; the other
    side answers. Each side reports the remote as present once the exchange
    completes. Applications that carry real media supply their own
    :data:`PeerFactory`.
    """

    def __init__(
        self,
        remote_id: str,
        initiator: bool,
        media: LocalMedia,
        send_signal: SignalSender,
        on_remote_stream: RemoteStreamCallback,
    ) -> None:
        self.remote_id = remote_id
        self.initiator = initiator
        self._media = media
        self._send_signal = send_signal
        self._on_remote_stream = on_remote_stream
        self._remote_description: Optional[dict] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._remote_description is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self.initiator:
            await self._send_signal(self.remote_id, {"type": "offer", "tracks": self._describe_tracks()})

    async def handle_signal(self, signal: dict) -> None:
        if self._closed:
            return
        kind = signal.get("type")
        if kind == "offer":
            self._remote_description = signal
            await self._send_signal(self.remote_id, {"type": "answer", "tracks": self._describe_tracks()})
            await self._remote_present()
        elif kind == "answer":
            if not self.initiator:
                logger.debug("Unexpected answer from %s", self.remote_id)
                return
            self._remote_description = signal
            await self._remote_present()
        else:
            logger.debug("Ignoring %s signal from %s", kind, self.remote_id)

    async def close(self) -> None:
        self._closed = True

    def _describe_tracks(self) -> dict:
        return {"audio": bool(self._media.audio_enabled), "video": bool(self._media.video_enabled)}

    async def _remote_present(self) -> None:
        result = self._on_remote_stream(self.remote_id)
        if asyncio.iscoroutine(result):
            await result
