"""State-machine based dictation session with silence auto-stop."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from config import SILENCE_TIMEOUT_MS
from errors import ERROR_MESSAGES, CaptureError
from interfaces import Scheduler, SpeechCapture, TimerHandle
from models import DictationState, Severity

logger = logging.getLogger(__name__)

StateCallback = Callable[[DictationState, DictationState], None]
SubmitCallback = Callable[[str], None]
NoticeCallback = Callable[[str, Severity], None]

SILENCE_STOP_NOTICE = "Stopped listening after silence."


class DictationSession:
    """Drives one speech capture at a time.

    Runs on a single event loop: transcript updates, capture errors and the
    silence timer must all be delivered on the same thread as the public
    calls.
    """

    def __init__(
        self,
        capture: SpeechCapture,
        scheduler: Scheduler,
        on_submit: SubmitCallback,
        auto_stop: bool = True,
        silence_timeout_s: float = SILENCE_TIMEOUT_MS / 1000.0,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_notice: Optional[NoticeCallback] = None,
        submit_on_stop: bool = False,
    ) -> None:
        self._capture = capture
        self._scheduler = scheduler
        self._on_submit = on_submit
        self._auto_stop = auto_stop
        self._silence_timeout_s = silence_timeout_s
        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_notice = on_notice
        self._submit_on_stop = submit_on_stop

        self._state = DictationState.IDLE
        self._transcript = ""
        self._silence_timer: Optional[TimerHandle] = None
        self._capture_active = False
        self._stopping = False

    @property
    def state(self) -> DictationState:
        return self._state

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def auto_stop(self) -> bool:
        return self._auto_stop

    @property
    def is_listening(self) -> bool:
        return self._state in (DictationState.LISTENING, DictationState.AWAITING_SILENCE)

    def set_auto_stop(self, enabled: bool) -> None:
        self._auto_stop = enabled
        if not enabled and self._state == DictationState.AWAITING_SILENCE:
            self._cancel_silence_timer()
            self._transition(DictationState.LISTENING)

    def start(self) -> None:
        if self._state != DictationState.IDLE:
            return
        self._transcript = ""
        try:
            self._capture.start(self.on_transcript_update, self._handle_capture_error)
        except CaptureError as exc:
            logger.warning("speech capture unavailable: %s", exc.message)
            self._emit_notice(exc.message, Severity.ERROR)
            self._safe_stop_capture()
            return
        except Exception as exc:
            logger.warning("speech capture failed to start: %s", exc)
            self._emit_notice(f"Voice input failed to start: {exc}", Severity.ERROR)
            self._safe_stop_capture()
            return
        self._capture_active = True
        self._transition(DictationState.LISTENING)

    def stop(self) -> None:
        """End listening; with ``submit_on_stop`` the transcript is sent."""
        self._end(submit=self._submit_on_stop)

    def cancel(self) -> None:
        """End listening without sending the transcript."""
        self._end(submit=False)

    def toggle(self) -> None:
        if self._state == DictationState.IDLE:
            self.start()
        else:
            self.stop()

    def finalize(self) -> bool:
        """Submit the transcript as a user command and end the session."""
        if not self._transcript.strip():
            return False
        self._cancel_silence_timer()
        if self.is_listening:
            # Pick up whatever was said after the last partial.
            self._drain_capture()
        text = self._transcript.strip()
        self._transition(DictationState.FINALIZED)
        self._transcript = ""
        try:
            self._on_submit(text)
        finally:
            self._end(submit=False)
        return True

    def on_transcript_update(self, text: str) -> None:
        if not self.is_listening:
            logger.debug("ignoring transcript update in state %s", self._state.value)
            return
        self._transcript = text
        if self._on_transcript:
            self._on_transcript(text)
        if self._stopping:
            return
        self._cancel_silence_timer()
        if self._auto_stop and text.strip():
            self._silence_timer = self._scheduler.call_later(
                self._silence_timeout_s, self._on_silence
            )
            self._transition(DictationState.AWAITING_SILENCE)
        else:
            self._transition(DictationState.LISTENING)

    def _on_silence(self) -> None:
        self._silence_timer = None
        if self._state != DictationState.AWAITING_SILENCE:
            return
        self.stop()
        self._emit_notice(SILENCE_STOP_NOTICE, Severity.INFO)

    def _handle_capture_error(self, code: str, message: str) -> None:
        logger.warning("speech capture error %s: %s", code, message)
        self._emit_notice(message or ERROR_MESSAGES.get(code, code), Severity.ERROR)
        # A transcript cut short by an error is never sent.
        self._end(submit=False)

    def _end(self, submit: bool) -> None:
        if self._state == DictationState.IDLE:
            return
        self._cancel_silence_timer()
        self._drain_capture()
        self._transition(DictationState.IDLE)
        if submit and self._transcript.strip():
            self.finalize()

    def _drain_capture(self) -> None:
        if not self._capture_active:
            return
        self._capture_active = False
        self._stopping = True
        try:
            self._safe_stop_capture()
        finally:
            self._stopping = False

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _emit_notice(self, message: str, severity: Severity) -> None:
        if self._on_notice:
            self._on_notice(message, severity)

    def _safe_stop_capture(self) -> None:
        try:
            self._capture.stop()
        except Exception as exc:  # pragma: no cover - defensive
            logger.warning("speech capture did not stop cleanly: %s", exc)

    def _transition(self, to_state: DictationState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
