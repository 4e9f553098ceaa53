"""ASR recognizer adapter using DashScope qwen3-asr-flash.

The qwen3-asr-flash model accepts complete audio (file path, URL, or base64)
and streams back recognition results via ``stream=True``. To give dictation a
live transcript, the adapter re-recognizes the audio captured so far each
time another ``window_s`` seconds have arrived, and emits a partial event
whenever the transcript changes. When the recorder sends its sentinel the
remaining audio is recognized once more and a final event is emitted.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import wave
from queue import Empty, Queue
from typing import Callable, Optional

from errors import ASR_PROTOCOL_ERROR, AUTH_FAILED, NETWORK_ERROR
from models import AudioFrame, RecognitionEvent, RecognitionKind

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = SAMPLE_WIDTH,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


class _Session:
    """State owned by one start/stop cycle of the adapter."""

    def __init__(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None:
        self.audio_queue = audio_queue
        self.on_event = on_event
        self.stop_event = threading.Event()
        self.latest_text = ""


class DashscopeRecognizerAdapter:
    def __init__(
        self,
        api_key: str,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
        window_s: float = 1.5,
        max_audio_s: float = 180.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._window_s = window_s
        self._max_audio_s = max_audio_s
        self._session: Optional[_Session] = None
        self._thread: Optional[threading.Thread] = None

    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None:
        previous = self._session
        if previous is not None:
            if previous.audio_queue is audio_queue and not previous.stop_event.is_set():
                return
            # A worker still waiting on the network keeps running detached.
            previous.stop_event.set()
        session = _Session(audio_queue, on_event)
        self._session = session
        self._thread = threading.Thread(target=self._worker, args=(session,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        session, thread = self._session, self._thread
        if session is None:
            return
        session.stop_event.set()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=0.5)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(self, session: _Session) -> None:
        """Consume audio frames until the sentinel, recognizing per window."""
        pcm = bytearray()
        sample_rate = 16000
        channels = 1
        unrecognized = 0

        while not session.stop_event.is_set():
            try:
                frame = session.audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                break
            pcm.extend(frame.pcm16_bytes)
            sample_rate = frame.sample_rate
            channels = frame.channels
            unrecognized += len(frame.pcm16_bytes)

            window_bytes = int(sample_rate * channels * SAMPLE_WIDTH * self._window_s)
            if unrecognized >= window_bytes:
                unrecognized = 0
                if not self._recognize(session, pcm, sample_rate, channels):
                    return

        if session.stop_event.is_set():
            return

        if pcm and unrecognized:
            if not self._recognize(session, pcm, sample_rate, channels):
                return

        session.on_event(RecognitionEvent(kind=RecognitionKind.FINAL.value, text=session.latest_text))

    def _recognize(self, session: _Session, pcm: bytearray, sample_rate: int, channels: int) -> bool:
        """Recognize the captured audio; False when the session must end."""
        max_bytes = int(sample_rate * channels * SAMPLE_WIDTH * self._max_audio_s)
        wav_b64 = _pcm_to_wav_base64(bytes(pcm[-max_bytes:]), sample_rate, channels)
        return self._recognize_stream(session, wav_b64)

    def _recognize_stream(self, session: _Session, wav_base64: str) -> bool:
        """Send audio to dashscope and emit a partial per changed transcript."""
        if dashscope is None:
            return self._fail(session, ASR_PROTOCOL_ERROR, "dashscope is not installed")
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            return self._fail(session, AUTH_FAILED, "No API key configured")

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            for chunk in response:
                if session.stop_event.is_set():
                    return False
                text = self._extract_text(chunk)
                if text and text != session.latest_text:
                    session.latest_text = text
                    session.on_event(RecognitionEvent(kind=RecognitionKind.PARTIAL.value, text=text))
        except Exception as exc:
            if not session.stop_event.is_set():
                session.on_event(self._to_error_event(exc))
            return False
        return not session.stop_event.is_set()

    @staticmethod
    def _fail(session: _Session, code: str, message: str) -> bool:
        logger.error("recognition unavailable: %s", message)
        session.on_event(
            RecognitionEvent(kind=RecognitionKind.ERROR.value, code=code, message=message, retryable=False)
        )
        return False

    @staticmethod
    def _extract_text(chunk: object) -> str:
        """Text of the first content part of a streaming chunk, or ''."""
        if not isinstance(chunk, dict):
            return ""
        try:
            part = chunk["output"]["choices"][0]["message"]["content"][0]
        except (KeyError, IndexError, TypeError):
            return ""
        return str(part.get("text", "")) if isinstance(part, dict) else ""

    @staticmethod
    def _to_error_event(exc: Exception) -> RecognitionEvent:
        """Classify an SDK or network failure."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "auth" in low or "api key" in low:
            code, retryable = AUTH_FAILED, False
        elif any(word in low for word in ("timeout", "network", "connection")):
            code, retryable = NETWORK_ERROR, True
        else:
            code, retryable = ASR_PROTOCOL_ERROR, True
        logger.warning("recognition failed (%s): %s", code, message)
        return RecognitionEvent(kind=RecognitionKind.ERROR.value, code=code, message=message, retryable=retryable)
