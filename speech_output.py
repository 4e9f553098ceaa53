"""Read-aloud of finished assistant replies."""

from __future__ import annotations

import logging
import os
import re
import threading
from queue import Empty, Queue
from typing import Optional

from interfaces import Speaker

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

try:
    from dashscope.audio.tts import SpeechSynthesizer
except Exception:  # pragma: no cover
    SpeechSynthesizer = None  # type: ignore

logger = logging.getLogger(__name__)

_PICTOGRAPHS = re.compile("[\U0001F000-\U0001FAFF\u2600-\u27BF\uFE0F\u200D]")


def clean_for_speech(text: str) -> str:
    """Drop emoji and collapse whitespace so the synthesizer reads only words."""
    return " ".join(_PICTOGRAPHS.sub("", text or "").split())


class ReadAloudQueue:
    """Speak texts one after another on a background thread."""

    def __init__(self, speaker: Speaker, volume: int = 50, enabled: bool = True) -> None:
        self._speaker = speaker
        self._volume = max(0, min(100, volume))
        self.enabled = enabled
        self._muted = False
        self._queue: Queue[str] = Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def volume(self) -> int:
        return self._volume

    def set_volume(self, volume: int) -> None:
        self._volume = max(0, min(100, int(volume)))

    def set_muted(self, muted: bool) -> None:
        self._muted = muted
        if muted:
            self._drain()
            self._speaker.cancel()

    def toggle_mute(self) -> bool:
        self.set_muted(not self._muted)
        return self._muted

    def speak(self, text: str) -> bool:
        if not self.enabled or self._muted:
            return False
        clean = clean_for_speech(text)
        if not clean:
            return False
        self._queue.put(clean)
        self._ensure_worker()
        return True

    def close(self) -> None:
        self._stop_event.set()
        self._drain()
        self._speaker.cancel()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=0.5)

    def _ensure_worker(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                text = self._queue.get(timeout=0.2)
            except Empty:
                continue
            if self._muted:
                continue
            try:
                self._speaker.speak(text, self._volume / 100.0)
            except Exception as exc:
                logger.error("speech synthesis error: %s", exc)

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                return


class DashscopeSpeaker:
    """Synthesize speech with DashScope and play it on the default output."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "sambert-zhiying-v1",
        sample_rate: int = 16000,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._sample_rate = sample_rate

    def speak(self, text: str, volume: float) -> None:
        if SpeechSynthesizer is None:
            raise RuntimeError("dashscope is not installed")
        if sd is None or np is None:
            raise RuntimeError("sounddevice is not installed")
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            raise RuntimeError("No API key configured")

        result = SpeechSynthesizer.call(
            model=self._model,
            text=text,
            sample_rate=self._sample_rate,
            format="pcm",
            api_key=api_key,
        )
        audio = result.get_audio_data()
        if not audio:
            raise RuntimeError(f"no audio returned for {text[:40]!r}")

        samples = np.frombuffer(audio, dtype=np.int16).astype(np.float32) / 32768.0
        sd.play(samples * max(0.0, min(1.0, volume)), samplerate=self._sample_rate)
        sd.wait()

    def cancel(self) -> None:
        if sd is not None:
            sd.stop()
