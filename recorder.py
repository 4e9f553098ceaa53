"""Microphone capture into a bounded frame queue via sounddevice."""

from __future__ import annotations

import logging
import threading
import time
from queue import Empty, Full, Queue
from typing import Any, Optional

from errors import CAPTURE_UNAVAILABLE, PERMISSION_DENIED, CaptureError
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

_PERMISSION_HINTS = ("permission", "not allowed", "denied")


def _to_capture_error(exc: Exception) -> CaptureError:
    low = str(exc).lower()
    if any(hint in low for hint in _PERMISSION_HINTS):
        return CaptureError(PERMISSION_DENIED)
    return CaptureError(CAPTURE_UNAVAILABLE, f"Microphone unavailable: {exc}")


class SoundDeviceRecorder:
    """Push 16-bit PCM frames to a queue, then ``None`` once stopped.

    The sounddevice callback runs on the PortAudio thread and never blocks:
    frames that do not fit are counted in ``dropped_chunks``.
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1, chunk_ms: int = 100) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.dropped_chunks = 0
        self._stream: Any = None
        self._queue: Optional[Queue[AudioFrame | None]] = None
        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def check_device(self) -> None:
        """Raise CaptureError unless an input device accepts our format."""
        if sd is None:
            raise CaptureError(CAPTURE_UNAVAILABLE, "sounddevice is not installed")
        try:
            sd.check_input_settings(samplerate=self.sample_rate, channels=self.channels, dtype="int16")
        except Exception as exc:
            raise _to_capture_error(exc) from exc

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise CaptureError(CAPTURE_UNAVAILABLE, "sounddevice is not installed")
            stream = None
            try:
                stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=self.sample_rate * self.chunk_ms // 1000,
                    callback=self._on_audio,
                )
                stream.start()
            except Exception as exc:
                if stream is not None:
                    stream.close()
                raise _to_capture_error(exc) from exc
            self._stream = stream
            self._queue = audio_queue
            self.dropped_chunks = 0
            self._running = True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream, self._stream = self._stream, None
            audio_queue, self._queue = self._queue, None
        if stream is not None:
            stream.stop()
            stream.close()
        if self.dropped_chunks:
            logger.warning("dropped %d audio chunks", self.dropped_chunks)
        if audio_queue is not None:
            self._put_sentinel(audio_queue)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        audio_queue = self._queue
        if not self._running or audio_queue is None or np is None:
            return
        if status:
            logger.debug("input status: %s", status)
        frame = AudioFrame(
            pcm16_bytes=np.asarray(indata, dtype=np.int16).tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    @staticmethod
    def _put_sentinel(audio_queue: Queue[AudioFrame | None]) -> None:
        # The consumer only ends on the sentinel, so evict the oldest frame if needed.
        while True:
            try:
                audio_queue.put_nowait(None)
                return
            except Full:
                try:
                    audio_queue.get_nowait()
                except Empty:
                    pass
