from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.protocol import (
    SIGNALING_PATH,
    CallBoundary,
    ProtocolError,
    SignalEvent,
    decode_signal_message,
    encode_signal_message,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[SignalEvent, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class SignalingError(RuntimeError):
    """The signaling relay refused or dropped the connection."""


def signaling_url(server_url: str, token: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    elif base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    return f"{base}{SIGNALING_PATH}?{urlencode({'token': token})}"


class SignalingClient:
    """WebSocket connection to the signaling relay.

    Incoming events are handed to ``on_message`` one at a time in arrival
    order, so offer/answer/candidate sequences stay ordered per peer.
    """

    def __init__(
        self,
        server_url: str,
        token: str,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        ack_timeout: float = 10.0,
    ) -> None:
        self._url = signaling_url(server_url, token)
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._ack_timeout = ack_timeout
        self._websocket = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._welcomed = asyncio.Event()
        self._connection_id: Optional[str] = None
        self._stop = False

    @property
    def connection_id(self) -> Optional[str]:
        return self._connection_id

    @property
    def connected(self) -> bool:
        return self._websocket is not None and not self._stop

    async def connect(self) -> str:
        logger.info("Connecting to signaling relay")
        try:
            self._websocket = await websockets.connect(self._url, open_timeout=self._ack_timeout)
        except (OSError, WebSocketException) as exc:
            raise SignalingError(f"Could not reach the signaling relay: {exc}") from exc
        self._recv_task = asyncio.create_task(self._recv_loop())
        try:
            await asyncio.wait_for(self._welcomed.wait(), timeout=self._ack_timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise SignalingError("Signaling relay did not greet the connection") from exc
        if self._connection_id is None:
            raise SignalingError("Connection closed before handshake completed")
        return self._connection_id

    async def close(self) -> None:
        if self._stop:
            return
        self._stop = True
        self._fail_pending(SignalingError("Signaling connection closed"))
        websocket = self._websocket
        if websocket is not None:
            try:
                await websocket.close()
            except Exception:
                logger.debug("Error while closing signaling socket", exc_info=True)
        task = self._recv_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._websocket = None
        self._recv_task = None

    async def join_room(self, room_id: str) -> list[str]:
        """Join ``room_id`` and return the connection ids already present."""
        reply = await self.request(SignalEvent.JOIN_ROOM, {"room_id": room_id})
        if reply.get("error"):
            raise SignalingError(str(reply["error"]))
        return [str(peer) for peer in reply.get("peers") or []]

    async def send_signal(self, to: str, signal: dict) -> None:
        await self.send(SignalEvent.SIGNAL, {"to": to, "signal": signal})

    async def call_started(self, boundary: CallBoundary) -> None:
        await self.send(SignalEvent.CALL_STARTED, boundary.to_dict())

    async def call_ended(self, boundary: CallBoundary) -> None:
        await self.send(SignalEvent.CALL_ENDED, boundary.to_dict())

    async def send(self, event: SignalEvent, data: Dict[str, object], *, ack: Optional[int] = None) -> None:
        websocket = self._websocket
        if websocket is None or self._stop:
            raise SignalingError("Signaling client is not connected")
        try:
            await websocket.send(encode_signal_message(event, data, ack=ack))
        except ConnectionClosed as exc:
            raise SignalingError("Signaling connection closed") from exc

    async def request(self, event: SignalEvent, data: Dict[str, object]) -> dict:
        ack = next(self._ack_ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ack] = future
        try:
            await self.send(event, data, ack=ack)
            return await asyncio.wait_for(future, timeout=self._ack_timeout)
        except asyncio.TimeoutError as exc:
            raise SignalingError(f"No acknowledgement for {event.value}") from exc
        finally:
            self._pending.pop(ack, None)

    async def _recv_loop(self) -> None:
        websocket = self._websocket
        assert websocket is not None
        disconnect_reason: Optional[str] = None
        try:
            async for text in websocket:
                if isinstance(text, bytes):
                    text = text.decode("utf-8")
                try:
                    event, data, ack = decode_signal_message(text)
                except ProtocolError:
                    logger.warning("Ignoring malformed signaling frame")
                    continue
                if event == SignalEvent.WELCOME:
                    self._connection_id = str(data.get("connection_id") or "") or None
                    self._welcomed.set()
                    continue
                if event == SignalEvent.ACK:
                    future = self._pending.get(ack) if ack is not None else None
                    if future is not None and not future.done():
                        future.set_result(data)
                    continue
                await self._dispatch(event, data)
            disconnect_reason = "server_closed"
        except ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
            disconnect_reason = "connection_closed"
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from signaling relay")
            disconnect_reason = "recv_error"
        finally:
            self._welcomed.set()
            self._fail_pending(SignalingError("Signaling connection closed"))
        if not self._stop:
            self._stop = True
            self._websocket = None
            await self._notify_disconnect(disconnect_reason)

    async def _dispatch(self, event: SignalEvent, data: dict) -> None:
        try:
            result = self._on_message(event, data)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling signaling event %s", event.value)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
