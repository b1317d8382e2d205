from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

import cv2
import numpy as np
import sounddevice as sd

from .media import MediaUnavailableError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms


class DeviceMedia:
    """An open camera plus microphone pair. ``release`` may be called any number of times."""

    def __init__(self, capture: cv2.VideoCapture, stream: sd.InputStream, *, width: int, height: int) -> None:
        self._capture = capture
        self._stream = stream
        self._width = width
        self._height = height
        self._lock = threading.Lock()
        self._released = False
        self._level = 0.0
        self.audio_enabled = True
        self.video_enabled = True

    @property
    def released(self) -> bool:
        return self._released

    @property
    def input_level(self) -> float:
        """RMS of the most recent microphone block, 0.0 when muted."""
        return self._level if self.audio_enabled else 0.0

    def set_audio_enabled(self, enabled: bool) -> None:
        self.audio_enabled = enabled

    def set_video_enabled(self, enabled: bool) -> None:
        self.video_enabled = enabled

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._released or not self.video_enabled:
                return None
            ret, frame = self._capture.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._width, self._height))

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning("Audio input status: %s", status)
        samples = np.asarray(indata, dtype=np.float32).flatten()
        if samples.size:
            self._level = float(np.sqrt(np.mean(np.square(samples))))

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError:
            logger.warning("Microphone stream did not close cleanly", exc_info=True)
        self._capture.release()
        logger.info("Local media released")


class DeviceMediaSource:
    """Opens the default camera with OpenCV and the default microphone with sounddevice."""

    def __init__(
        self,
        *,
        device_index: int = 0,
        width: int = 640,
        height: int = 360,
        fps: int = 15,
        audio_device: Optional[int] = None,
    ) -> None:
        self._device_index = device_index
        self._width = width
        self._height = height
        self._fps = max(1, fps)
        self._audio_device = audio_device

    async def acquire(self) -> DeviceMedia:
        return await asyncio.to_thread(self._open)

    def _open(self) -> DeviceMedia:
        capture = cv2.VideoCapture(self._device_index)
        if not capture.isOpened():
            capture.release()
            raise MediaUnavailableError("No camera available. Check that it is connected and camera access is allowed.")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        capture.set(cv2.CAP_PROP_FPS, self._fps)

        media: Optional[DeviceMedia] = None
        try:
            stream = sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="float32",
                blocksize=FRAME_SAMPLES,
                device=self._audio_device,
                callback=lambda *args: media._on_audio(*args) if media is not None else None,
            )
            media = DeviceMedia(capture, stream, width=self._width, height=self._height)
            stream.start()
        except Exception as exc:
            if media is not None:
                media.release()
            else:
                capture.release()
            if isinstance(exc, (sd.PortAudioError, ValueError)):
                # ValueError: no input device matches the requested one
                raise MediaUnavailableError(
                    "No microphone available. Check that it is connected and microphone access is allowed."
                ) from exc
            raise
        logger.info("Acquired camera %s and microphone %s", self._device_index, self._audio_device)
        return media
