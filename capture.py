"""Speech capture built from a microphone recorder and a streaming recognizer."""

from __future__ import annotations

import logging
import threading
from queue import Queue
from typing import Callable, Optional

from errors import ASR_PROTOCOL_ERROR
from interfaces import CaptureErrorCallback, Recorder, RecognizerAdapter, TranscriptCallback
from models import AudioFrame, RecognitionEvent, RecognitionKind

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Callable[[], None]], None]


def _call_now(fn: Callable[[], None]) -> None:
    fn()


class MicrophoneSpeechCapture:
    """Feeds recorder frames to the recognizer and reports transcripts.

    Recognizer events arrive on a worker thread; ``dispatch`` hands each
    callback to the thread that owns the dictation session. ``stop`` blocks
    for up to ``finalize_timeout_s`` so the audio after the last recognition
    window still reaches ``on_transcript``, called on the stopping thread.
    """

    def __init__(
        self,
        recorder: Recorder,
        recognizer: RecognizerAdapter,
        dispatch: Dispatcher = _call_now,
        queue_maxsize: int = 50,
        finalize_timeout_s: float = 3.0,
    ) -> None:
        self._recorder = recorder
        self._recognizer = recognizer
        self._dispatch = dispatch
        self._queue_maxsize = queue_maxsize
        self._finalize_timeout_s = finalize_timeout_s
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_error: Optional[CaptureErrorCallback] = None
        self._session_id = 0
        self._active = False
        self._failed = False
        self._final_event = threading.Event()
        self._final_text = ""

    def replace_recognizer(self, recognizer: RecognizerAdapter) -> None:
        self._recognizer = recognizer

    def start(self, on_transcript: TranscriptCallback, on_error: CaptureErrorCallback) -> None:
        self._session_id += 1
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._failed = False
        self._final_event = threading.Event()
        self._final_text = ""
        audio_queue: Queue[AudioFrame | None] = Queue(maxsize=self._queue_maxsize)
        session_id = self._session_id
        self._recognizer.start(audio_queue, lambda event: self._handle_event(session_id, event))
        try:
            self._recorder.start(audio_queue)
        except Exception:
            self._recognizer.stop()
            raise
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        final_text = ""
        try:
            self._recorder.stop()
            final_text = self._await_final()
        finally:
            self._session_id += 1
            self._recognizer.stop()
        if final_text and self._on_transcript:
            self._on_transcript(final_text)

    def _await_final(self) -> str:
        if self._failed:
            return ""
        if not self._final_event.wait(timeout=self._finalize_timeout_s):
            logger.warning("no final transcript within %.1fs", self._finalize_timeout_s)
            return ""
        return self._final_text

    def _handle_event(self, session_id: int, event: RecognitionEvent) -> None:
        if session_id != self._session_id:
            return
        kind = event.kind
        if kind == RecognitionKind.FINAL.value:
            self._final_text = event.text
            self._final_event.set()
        if kind in (RecognitionKind.PARTIAL.value, RecognitionKind.FINAL.value):
            # While stopping, the final text is handed over by stop() itself.
            if event.text and self._active and self._on_transcript:
                callback = self._on_transcript
                self._dispatch(lambda: callback(event.text))
            return
        if kind == RecognitionKind.ERROR.value:
            self._failed = True
            self._final_event.set()
            code = event.code or ASR_PROTOCOL_ERROR
            if not self._active:
                logger.warning("recognition failed while stopping (%s): %s", code, event.message)
            elif self._on_error:
                callback_err = self._on_error
                self._dispatch(lambda: callback_err(code, event.message))
            return
        logger.debug("unhandled recognition event %s", kind)
