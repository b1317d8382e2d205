from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class MeetingsApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MeetingsClient:
    """Thin async wrapper over the meeting endpoints used during a call."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=server_url.rstrip("/"), timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __aenter__(self) -> "MeetingsClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def reveal_room(self, meeting_id: str, index: int) -> Dict[str, Any]:
        return await self._call("GET", f"/api/meetings/{meeting_id}/room/{index}")

    async def room_info(self, room_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/api/meetings/room-info/{room_id}")

    async def complete_class(
        self,
        meeting_id: str,
        index: int,
        *,
        start_at: datetime,
        end_at: datetime,
    ) -> Dict[str, Any]:
        payload = {"start_at": start_at.isoformat(), "end_at": end_at.isoformat()}
        return await self._call("PUT", f"/api/meetings/{meeting_id}/classes/{index}/complete", json=payload)

    async def _call(self, method: str, path: str, *, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise MeetingsApiError(f"Could not reach the server: {exc}") from exc
        if response.is_error:
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            raise MeetingsApiError(message or response.reason_phrase, status_code=response.status_code)
        return response.json()
