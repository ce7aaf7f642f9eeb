"""Camera and microphone tracks backed by OpenCV and sounddevice."""
from __future__ import annotations

import asyncio
import fractions
import logging
import threading
from typing import Optional

import av
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError

from .media import MediaAcquisitionError, MediaStream

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
AUDIO_QUEUE_FRAMES = 50


class CameraTrack(VideoStreamTrack):
    """Webcam frames; black frames while disabled."""

    def __init__(self, capture, *, width: int = 640, height: int = 360) -> None:
        super().__init__()
        self._capture = capture
        self._capture_lock = threading.Lock()
        self._reading = False
        self._width = width
        self._height = height
        self.enabled = True

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        image: Optional[np.ndarray] = None
        if self.enabled:
            image = await asyncio.to_thread(self._read_frame)
        if image is None:
            image = np.zeros((self._height, self._width, 3), dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(image, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def _read_frame(self) -> Optional[np.ndarray]:
        import cv2

        with self._capture_lock:
            capture = self._capture
            if capture is None:
                return None
            self._reading = True
        try:
            ret, frame = capture.read()
        finally:
            with self._capture_lock:
                self._reading = False
                stopped = self._capture is None
            if stopped:
                capture.release()
        if not ret or stopped:
            return None
        return cv2.resize(frame, (self._width, self._height))

    def stop(self) -> None:
        super().stop()
        # A read in flight on the worker thread releases the capture when it returns.
        with self._capture_lock:
            capture, self._capture = self._capture, None
            reading = self._reading
        if capture is not None and not reading:
            capture.release()


class MicrophoneTrack(MediaStreamTrack):
    """Microphone capture; silence while disabled."""

    kind = "audio"

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        import sounddevice as sd

        self.enabled = True
        self._loop = loop
        self._queue: "asyncio.Queue[bytes]" = asyncio.Queue(maxsize=AUDIO_QUEUE_FRAMES)
        self._timestamp = 0
        self._stream: Optional[sd.RawInputStream] = sd.RawInputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            callback=self._capture_callback,
        )
        self._stream.start()

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        self._loop.call_soon_threadsafe(self._enqueue, bytes(indata))

    def _enqueue(self, chunk: bytes) -> None:
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            # Drop audio if the consumer falls behind
            pass

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        chunk = await self._queue.get()
        samples = np.frombuffer(chunk, dtype=np.int16)
        if not self.enabled:
            samples = np.zeros_like(samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._timestamp
        frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
        self._timestamp += samples.size
        return frame

    def stop(self) -> None:
        super().stop()
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def _open_camera(device_index: int):
    import cv2

    capture = cv2.VideoCapture(device_index)
    if not capture.isOpened():
        capture.release()
        raise MediaAcquisitionError(f"no camera at index {device_index}")
    return capture


def _check_microphone() -> None:
    import sounddevice as sd

    try:
        sd.query_devices(kind="input")
    except (sd.PortAudioError, ValueError) as exc:
        raise MediaAcquisitionError(f"no microphone ({exc})") from exc


def _open_microphone(loop: asyncio.AbstractEventLoop) -> MicrophoneTrack:
    import sounddevice as sd

    try:
        return MicrophoneTrack(loop)
    except sd.PortAudioError as exc:
        raise MediaAcquisitionError(f"microphone could not be opened ({exc})") from exc


async def acquire_user_media(*, audio: bool = True, video: bool = True, device_index: int = 0) -> MediaStream:
    """Open the local camera and microphone.

    Raises :class:`MediaAcquisitionError` when either device is missing or
    cannot be opened; nothing is left running in that case.
    """

    loop = asyncio.get_running_loop()
    capture = None
    tracks = []
    try:
        if video:
            capture = await asyncio.to_thread(_open_camera, device_index)
        if audio:
            await asyncio.to_thread(_check_microphone)
            tracks.append(_open_microphone(loop))
        if capture is not None:
            tracks.append(CameraTrack(capture))
    except MediaAcquisitionError:
        for track in tracks:
            track.stop()
        if capture is not None:
            capture.release()
        raise
    except (ImportError, OSError) as exc:
        for track in tracks:
            track.stop()
        if capture is not None:
            capture.release()
        raise MediaAcquisitionError(str(exc)) from exc
    logger.info("Acquired local media (%s)", ", ".join(track.kind for track in tracks))
    return MediaStream(tracks)
