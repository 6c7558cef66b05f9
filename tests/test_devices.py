import asyncio
import threading

import numpy as np
import pytest

from liveclass import devices
from liveclass.devices import CameraTrack, LocalDeviceFactory, MicrophoneTrack, probe_cameras, scale_samples


class DummyCapture:
    available = {0, 2}
    released: list = []

    def __init__(self, index: int) -> None:
        self.index = index
        self.props: dict = {}

    def isOpened(self) -> bool:
        return self.index in self.available

    def set(self, prop, value) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        return True, np.zeros((480, 640, 3), dtype=np.uint8)

    def release(self) -> None:
        DummyCapture.released.append(self.index)


class BlockingCapture(DummyCapture):
    """Capture whose reads park in the worker thread until ``gate`` is set."""

    gate = threading.Event()
    entered = threading.Event()
    reading = 0
    released_while_reading: list = []

    def read(self):
        BlockingCapture.reading += 1
        BlockingCapture.entered.set()
        try:
            BlockingCapture.gate.wait(2.0)
            return super().read()
        finally:
            BlockingCapture.reading -= 1

    def release(self) -> None:
        if BlockingCapture.reading:
            BlockingCapture.released_while_reading.append(self.index)
        super().release()


async def wait_for_release(capture_cls, index: int) -> None:
    for _ in range(100):
        if index in capture_cls.released:
            return
        await asyncio.sleep(0.01)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def cameras(monkeypatch: pytest.MonkeyPatch):
    DummyCapture.released = []
    monkeypatch.setattr(devices.cv2, "VideoCapture", DummyCapture)
    monkeypatch.setattr(devices, "_camera_label", lambda index: f"Camera {index}")
    return DummyCapture


def test_scale_samples_applies_volume_and_clips() -> None:
    samples = np.array([0.5, -0.5, 1.0], dtype=np.float32)
    assert np.allclose(scale_samples(samples, 50), [0.25, -0.25, 0.5])
    assert np.allclose(scale_samples(samples, 0), [0.0, 0.0, 0.0])
    assert np.allclose(scale_samples(samples * 4, 100), [1.0, -1.0, 1.0])


def test_encode_produces_resized_jpeg() -> None:
    track = CameraTrack(width=160, height=90, quality=50)
    payload = track.encode(np.full((480, 640, 3), 127, dtype=np.uint8))
    assert payload is not None
    assert payload[:2] == b"\xff\xd8"


def test_probe_lists_only_openable_cameras(cameras) -> None:
    found = probe_cameras(4)
    assert [device.device_id for device in found] == ["0", "2"]
    assert found[1].label == "Camera 2"
    assert sorted(cameras.released) == [0, 1, 2, 3]


@pytest.mark.anyio
async def test_camera_track_swaps_device_in_place(cameras) -> None:
    factory = LocalDeviceFactory(width=160, height=90)
    track = await factory.create_camera_track()
    assert track.device_id == "0"

    await track.set_device("2")
    assert track.device_id == "2"
    assert cameras.released == [0]

    with pytest.raises(OSError):
        await track.set_device("1")
    assert track.device_id == "2"

    track.stop()
    track.close()
    await wait_for_release(cameras, 2)
    assert cameras.released[-1] == 2


@pytest.mark.anyio
async def test_unavailable_camera_raises_os_error(cameras) -> None:
    factory = LocalDeviceFactory(camera="3")
    with pytest.raises(OSError):
        await factory.create_camera_track()


@pytest.mark.anyio
async def test_camera_frames_reach_sink(cameras) -> None:
    received: list = []
    track = CameraTrack("0", width=64, height=36, fps=50)
    track.attach_sink(received.append)
    await track.open()
    for _ in range(50):
        if received:
            break
        await asyncio.sleep(0.02)
    track.stop()
    track.close()
    assert received and received[0][:2] == b"\xff\xd8"


@pytest.mark.anyio
async def test_microphone_volume_and_delivery() -> None:
    track = MicrophoneTrack()
    received: list = []
    track.attach_sink(received.append)

    await track.set_volume(150)
    assert track.volume == 100
    await track.set_volume(-5)
    assert track.volume == 0

    track._deliver(b"pcm")
    track.stop()
    track._deliver(b"late")
    assert received == [b"pcm"]


@pytest.fixture
def blocking_cameras(monkeypatch: pytest.MonkeyPatch):
    DummyCapture.released = []
    BlockingCapture.gate = threading.Event()
    BlockingCapture.entered = threading.Event()
    BlockingCapture.reading = 0
    BlockingCapture.released_while_reading = []
    monkeypatch.setattr(devices.cv2, "VideoCapture", BlockingCapture)
    yield BlockingCapture
    BlockingCapture.gate.set()


@pytest.mark.anyio
async def test_swap_waits_for_in_flight_read(blocking_cameras) -> None:
    track = CameraTrack("0", width=64, height=36, fps=50)
    track.attach_sink(lambda payload: None)
    await track.open()
    assert await asyncio.to_thread(blocking_cameras.entered.wait, 2.0)

    swap = asyncio.create_task(track.set_device("2"))
    await asyncio.sleep(0.05)
    assert blocking_cameras.released == []
    assert not swap.done()

    blocking_cameras.gate.set()
    await swap
    assert track.device_id == "2"
    assert blocking_cameras.released == [0]

    track.stop()
    track.close()
    await wait_for_release(blocking_cameras, 2)
    assert blocking_cameras.released_while_reading == []


@pytest.mark.anyio
async def test_close_defers_release_until_read_returns(blocking_cameras) -> None:
    track = CameraTrack("0", width=64, height=36, fps=50)
    track.attach_sink(lambda payload: None)
    await track.open()
    assert await asyncio.to_thread(blocking_cameras.entered.wait, 2.0)

    track.stop()
    track.close()
    await asyncio.sleep(0.05)
    assert blocking_cameras.released == []

    blocking_cameras.gate.set()
    await wait_for_release(blocking_cameras, 0)
    assert blocking_cameras.released == [0]
    assert blocking_cameras.released_while_reading == []
