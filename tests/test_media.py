import numpy as np
import pytest

try:
    import cv2  # noqa: F401
    import sounddevice as sd
except (ImportError, OSError):  # PortAudio or OpenCV shared libraries missing on this host
    pytest.skip("capture libraries are not available", allow_module_level=True)

from client import devices as devices_module
from client.devices import DeviceMedia, DeviceMediaSource
from client.media import MediaUnavailableError


@pytest.fixture
def anyio_backend():
    return "asyncio"


class DummyCapture:
    def __init__(self, opened: bool = True, frame: bool = True) -> None:
        self.opened = opened
        self.frame = frame
        self.release_count = 0
        self.settings: dict = {}

    def isOpened(self) -> bool:
        return self.opened

    def set(self, prop, value) -> None:
        self.settings[prop] = value

    def read(self):
        if not self.frame:
            return False, None
        return True, np.zeros((480, 640, 3), dtype=np.uint8)

    def release(self) -> None:
        self.release_count += 1


class DummyStream:
    def __init__(self, fail_stop: bool = False) -> None:
        self.fail_stop = fail_stop
        self.started = False
        self.closed = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        if self.fail_stop:
            raise sd.PortAudioError("device gone")

    def close(self) -> None:
        self.closed = True


def test_read_frame_resizes_and_respects_video_toggle() -> None:
    media = DeviceMedia(DummyCapture(), DummyStream(), width=320, height=180)

    frame = media.read_frame()
    assert frame is not None
    assert frame.shape == (180, 320, 3)

    media.set_video_enabled(False)
    assert media.read_frame() is None

    media.set_video_enabled(True)
    media.release()
    assert media.read_frame() is None


def test_missing_frame_returns_none() -> None:
    media = DeviceMedia(DummyCapture(frame=False), DummyStream(), width=320, height=180)
    assert media.read_frame() is None


def test_input_level_tracks_audio_blocks_and_mute() -> None:
    media = DeviceMedia(DummyCapture(), DummyStream(), width=320, height=180)
    assert media.input_level == 0.0

    media._on_audio(np.full((320, 1), 0.5, dtype=np.float32), 320, None, None)
    assert media.input_level == pytest.approx(0.5)

    media.set_audio_enabled(False)
    assert media.input_level == 0.0


def test_release_is_idempotent_and_survives_stream_errors() -> None:
    capture = DummyCapture()
    stream = DummyStream(fail_stop=True)
    media = DeviceMedia(capture, stream, width=320, height=180)

    media.release()
    media.release()

    assert media.released
    assert capture.release_count == 1


@pytest.mark.anyio
async def test_unavailable_camera_raises(monkeypatch) -> None:
    capture = DummyCapture(opened=False)
    monkeypatch.setattr(devices_module.cv2, "VideoCapture", lambda index: capture)

    with pytest.raises(MediaUnavailableError, match="No camera available"):
        await DeviceMediaSource().acquire()
    assert capture.release_count == 1


@pytest.mark.anyio
async def test_unavailable_microphone_releases_camera(monkeypatch) -> None:
    capture = DummyCapture()

    def failing_stream(**kwargs):
        raise sd.PortAudioError("no input device")

    monkeypatch.setattr(devices_module.cv2, "VideoCapture", lambda index: capture)
    monkeypatch.setattr(devices_module.sd, "InputStream", failing_stream)

    with pytest.raises(MediaUnavailableError, match="No microphone available"):
        await DeviceMediaSource().acquire()
    assert capture.release_count == 1


@pytest.mark.anyio
async def test_acquire_opens_camera_and_microphone(monkeypatch) -> None:
    capture = DummyCapture()
    stream = DummyStream()
    monkeypatch.setattr(devices_module.cv2, "VideoCapture", lambda index: capture)
    monkeypatch.setattr(devices_module.sd, "InputStream", lambda **kwargs: stream)

    media = await DeviceMediaSource(width=320, height=180, fps=0).acquire()

    assert stream.started
    assert capture.settings[devices_module.cv2.CAP_PROP_FPS] == 1
    media.release()
    assert stream.closed


@pytest.mark.anyio
async def test_unknown_microphone_releases_camera(monkeypatch) -> None:
    capture = DummyCapture()

    def unmatched_device(**kwargs):
        raise ValueError("No input device matching 'usb-mic'")

    monkeypatch.setattr(devices_module.cv2, "VideoCapture", lambda index: capture)
    monkeypatch.setattr(devices_module.sd, "InputStream", unmatched_device)

    with pytest.raises(MediaUnavailableError, match="No microphone available"):
        await DeviceMediaSource().acquire()
    assert capture.release_count == 1


@pytest.mark.anyio
async def test_failed_stream_start_releases_everything(monkeypatch) -> None:
    capture = DummyCapture()
    stream = DummyStream()

    def broken_start() -> None:
        raise RuntimeError("stream start failed")

    stream.start = broken_start
    monkeypatch.setattr(devices_module.cv2, "VideoCapture", lambda index: capture)
    monkeypatch.setattr(devices_module.sd, "InputStream", lambda **kwargs: stream)

    with pytest.raises(RuntimeError, match="stream start failed"):
        await DeviceMediaSource().acquire()
    assert capture.release_count == 1
    assert stream.closed
