from __future__ import annotations

from typing import Protocol


class MediaUnavailableError(RuntimeError):
    """Camera or microphone could not be opened (missing device or no permission)."""


class LocalMedia(Protocol):
    audio_enabled: bool
    video_enabled: bool

    def set_audio_enabled(self, enabled: bool) -> None: ...

    def set_video_enabled(self, enabled: bool) -> None: ...

    def release(self) -> None: ...


class MediaSource(Protocol):
    async def acquire(self) -> LocalMedia: ...
