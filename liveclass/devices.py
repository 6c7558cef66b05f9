from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from typing import Callable, List, Optional

import cv2
import numpy as np

from liveclass_shared.protocol import CameraDevice, MediaKind

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
MAX_CAMERA_PROBE = 4

FrameSink = Callable[[bytes], None]

_track_ids = itertools.count(1)


def _next_track_id(prefix: str) -> str:
    return f"{prefix}-{next(_track_ids)}"


def _portaudio_error(exc: Exception) -> OSError:
    text = str(exc)
    if "permission" in text.lower() or "denied" in text.lower():
        return PermissionError(text)
    return OSError(text)


def scale_samples(samples: np.ndarray, volume: int) -> np.ndarray:
    """Apply a 0-100 volume to float32 PCM, clipped to [-1, 1]."""
    gain = max(0, min(volume, 100)) / 100.0
    return np.clip(samples.astype(np.float32) * gain, -1.0, 1.0)


class MicrophoneTrack:
    """Microphone capture feeding 20ms float32 PCM frames to a sink."""

    kind = MediaKind.AUDIO

    def __init__(self, *, device: Optional[str] = None, sample_rate: int = SAMPLE_RATE) -> None:
        self.track_id = _next_track_id("mic")
        self._device = device
        self._sample_rate = sample_rate
        self._enabled = True
        self._volume = 100
        self._sink: Optional[FrameSink] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream = None
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def volume(self) -> int:
        return self._volume

    def open(self) -> None:
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        try:
            self._stream = sd.InputStream(
                samplerate=self._sample_rate,
                channels=CHANNELS,
                dtype="float32",
                blocksize=FRAME_SAMPLES,
                device=self._device,
                callback=self._capture_callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise _portaudio_error(exc) from exc
        logger.debug("Microphone track %s opened", self.track_id)

    def attach_sink(self, sink: Optional[FrameSink]) -> None:
        self._sink = sink

    async def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    async def set_volume(self, volume: int) -> None:
        self._volume = max(0, min(int(volume), 100))

    def stop(self) -> None:
        self._sink = None
        if self._stream is not None:
            self._stream.stop()

    def close(self) -> None:
        self._closed = True
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if self._closed or not self._enabled or self._sink is None or self._loop is None:
            return
        if status:
            logger.warning("Audio input status: %s", status)
        samples = scale_samples(np.array(indata, dtype=np.float32).flatten(), self._volume)
        self._loop.call_soon_threadsafe(self._deliver, samples.tobytes())

    def _deliver(self, payload: bytes) -> None:
        sink = self._sink
        if sink is not None:
            sink(payload)


class CameraTrack:
    """Webcam capture feeding JPEG frames to a sink; the device can be swapped while running."""

    kind = MediaKind.VIDEO

    def __init__(
        self,
        device_id: str = "0",
        *,
        width: int = 640,
        height: int = 360,
        fps: int = 12,
        quality: int = 60,
    ) -> None:
        self.track_id = _next_track_id("cam")
        self._device_id = device_id
        self._width = width
        self._height = height
        self._fps = max(1, fps)
        self._quality = max(20, min(quality, 90))
        self._enabled = True
        self._sink: Optional[FrameSink] = None
        self._capture: Optional[cv2.VideoCapture] = None
        self._capture_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._swap_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def device_id(self) -> str:
        return self._device_id

    async def open(self) -> None:
        self._capture = await asyncio.to_thread(self._open_capture, self._device_id)
        self._stop_event.clear()
        self._capture_task = asyncio.create_task(self._capture_loop())
        logger.debug("Camera track %s opened on device %s", self.track_id, self._device_id)

    def attach_sink(self, sink: Optional[FrameSink]) -> None:
        self._sink = sink

    async def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    async def set_device(self, device_id: str) -> None:
        """Open the new device first so a failed swap leaves the current one running.

        Frame reads hold the same lock, so the old capture is never released
        while a worker thread is still reading from it.
        """
        async with self._swap_lock:
            replacement = await asyncio.to_thread(self._open_capture, device_id)
            previous = self._capture
            self._capture = replacement
            self._device_id = device_id
            if previous is not None:
                previous.release()

    def stop(self) -> None:
        self._sink = None
        self._stop_event.set()
        if self._capture_task is not None:
            self._capture_task.cancel()

    def close(self) -> None:
        """Release the device once the capture loop has let go of it."""
        task = self._capture_task
        self._capture_task = None
        if task is not None and not task.done():
            self._stop_event.set()
            task.cancel()
            task.add_done_callback(lambda _: self._release_capture())
        else:
            self._release_capture()

    def _release_capture(self) -> None:
        capture = self._capture
        self._capture = None
        if capture is not None:
            capture.release()

    def encode(self, frame: np.ndarray) -> Optional[bytes]:
        frame = cv2.resize(frame, (self._width, self._height))
        success, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self._quality])
        if not success:
            return None
        return buffer.tobytes()

    def _open_capture(self, device_id: str) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(int(device_id))
        if not cap.isOpened():
            cap.release()
            raise OSError(f"Camera {device_id} is busy or unavailable")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        cap.set(cv2.CAP_PROP_FPS, self._fps)
        return cap

    async def _capture_loop(self) -> None:
        frame_interval = 1 / self._fps
        while not self._stop_event.is_set():
            if not self._enabled or self._sink is None or self._capture is None:
                await asyncio.sleep(0.2)
                continue
            async with self._swap_lock:
                capture = self._capture
                frame = await self._read_to_completion(capture) if capture is not None else None
            if frame is None:
                await asyncio.sleep(frame_interval)
                continue
            payload = self.encode(frame)
            sink = self._sink
            if payload is not None and sink is not None and self._enabled:
                sink(payload)
            await asyncio.sleep(frame_interval)

    async def _read_to_completion(self, capture: cv2.VideoCapture) -> Optional[np.ndarray]:
        # Cancelling the task does not stop the worker thread; keep the lock until it returns.
        read = asyncio.ensure_future(asyncio.to_thread(self._read_frame, capture))
        try:
            return await asyncio.shield(read)
        except asyncio.CancelledError:
            while not read.done():
                try:
                    await asyncio.wait([read])
                except asyncio.CancelledError:
                    continue
            raise

    @staticmethod
    def _read_frame(cap: cv2.VideoCapture) -> Optional[np.ndarray]:
        ret, frame = cap.read()
        if not ret:
            return None
        return frame


def _camera_label(index: int) -> str:
    name = Path(f"/sys/class/video4linux/video{index}/name")
    try:
        return name.read_text(encoding="utf-8").strip() or f"Camera {index}"
    except OSError:
        return f"Camera {index}"


def probe_cameras(max_index: int = MAX_CAMERA_PROBE) -> List[CameraDevice]:
    devices: List[CameraDevice] = []
    for index in range(max_index):
        cap = cv2.VideoCapture(index)
        try:
            if cap.isOpened():
                devices.append(CameraDevice(device_id=str(index), label=_camera_label(index)))
        finally:
            cap.release()
    return devices


class LocalDeviceFactory:
    """Creates capture tracks; device failures surface as PermissionError or OSError."""

    def __init__(
        self,
        *,
        microphone: Optional[str] = None,
        camera: str = "0",
        width: int = 640,
        height: int = 360,
        fps: int = 12,
        quality: int = 60,
        max_probe: int = MAX_CAMERA_PROBE,
    ) -> None:
        self._microphone = microphone
        self._camera = camera
        self._width = width
        self._height = height
        self._fps = fps
        self._quality = quality
        self._max_probe = max_probe

    async def create_microphone_track(self) -> MicrophoneTrack:
        track = MicrophoneTrack(device=self._microphone)
        track.open()
        return track

    async def create_camera_track(self, device_id: Optional[str] = None) -> CameraTrack:
        track = CameraTrack(
            device_id or self._camera,
            width=self._width,
            height=self._height,
            fps=self._fps,
            quality=self._quality,
        )
        await track.open()
        return track

    async def list_cameras(self) -> List[CameraDevice]:
        return await asyncio.to_thread(probe_cameras, self._max_probe)
