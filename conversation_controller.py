"""Orchestrates streaming replies, dictation and the durable history mirror."""

from __future__ import annotations

import logging
import webbrowser
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from dictation import DictationSession, StateCallback
from errors import COMMAND_FAILED, ERROR_MESSAGES, TRANSPORT_FAILURE_REPLY
from interfaces import CommandClient, RealtimeChannel, Scheduler, SpeechCapture
from models import (
    CommandResult,
    Fragment,
    LoadResult,
    MergeOutcome,
    Message,
    Role,
    Severity,
    StorageUsage,
    utc_now,
)
from notifications import NotificationCenter
from persistence import PersistenceManager
from speech_output import ReadAloudQueue
from stream_merger import ingest
from transport import command_payload, fragment_from_event

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]
Runner = Callable[[Callable[[], None]], None]


def _run_inline(fn: Callable[[], None]) -> None:
    fn()


class ConversationController:
    """Owns the live message sequence.

    Everything here runs on one event loop thread; transport and recognizer
    callbacks must be marshalled onto it before calling in. HTTP commands run
    through ``run_in_background`` and their replies come back via ``dispatch``.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        command_client: CommandClient,
        notifications: NotificationCenter,
        channel: Optional[RealtimeChannel] = None,
        read_aloud: Optional[ReadAloudQueue] = None,
        open_url: Callable[[str], Any] = webbrowser.open_new_tab,
        on_change: Optional[ChangeCallback] = None,
        clock: Callable[[], datetime] = utc_now,
        run_in_background: Runner = _run_inline,
        dispatch: Runner = _run_inline,
    ) -> None:
        self._persistence = persistence
        self._command_client = command_client
        self._notifications = notifications
        self._channel = channel
        self._read_aloud = read_aloud
        self._open_url = open_url
        self._on_change = on_change
        self._clock = clock
        self._run_in_background = run_in_background
        self._dispatch = dispatch

        self._messages: tuple[Message, ...] = ()
        self._connected = False
        self._pending_requests = 0
        self.weather: Optional[Dict[str, Any]] = None
        self.dictation: Optional[DictationSession] = None

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def loading(self) -> bool:
        return self._pending_requests > 0

    def attach_channel(self, channel: RealtimeChannel) -> None:
        self._channel = channel

    def create_dictation(
        self,
        capture: SpeechCapture,
        scheduler: Scheduler,
        auto_stop: bool = True,
        silence_timeout_s: Optional[float] = None,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        submit_on_stop: bool = False,
    ) -> DictationSession:
        kwargs: Dict[str, Any] = {}
        if silence_timeout_s is not None:
            kwargs["silence_timeout_s"] = silence_timeout_s
        self.dictation = DictationSession(
            capture=capture,
            scheduler=scheduler,
            on_submit=self.submit_command,
            auto_stop=auto_stop,
            on_state_change=on_state_change,
            on_transcript=on_transcript,
            on_notice=self._notifications.push,
            submit_on_stop=submit_on_stop,
            **kwargs,
        )
        return self.dictation

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def restore(self) -> LoadResult:
        """Replace the live sequence with the stored history."""
        result = self._persistence.load()
        # No stream survives a restart.
        self._messages = tuple(
            replace(m, streaming=False) if m.streaming else m for m in result.snapshot.messages
        )
        self._emit_change()
        return result

    def clear_history(self) -> None:
        self._messages = ()
        self._persistence.clear()
        self._emit_change()

    def storage_usage(self) -> StorageUsage:
        return self._persistence.usage()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def set_connected(self, connected: bool) -> None:
        self._connected = connected

    def handle_event(self, name: str, payload: Dict[str, Any]) -> None:
        if name == "ai_response_chunk":
            self.apply_fragment(fragment_from_event(payload))
        elif name == "action_completed":
            self._handle_action_completed(payload)
        elif name == "open_url":
            self._handle_open_url(payload)
        else:
            logger.debug("ignoring server event %s", name)

    def apply_fragment(self, fragment: Fragment, speak: bool = True) -> MergeOutcome:
        outcome = ingest(self._messages, fragment)
        self._messages = outcome.messages
        self._mutated()
        if outcome.finalized:
            if speak and self._read_aloud is not None:
                self._read_aloud.speak(outcome.message.text)
            self._persistence.flush()
        return outcome

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def submit_command(self, command: str) -> None:
        text = command.strip()
        if not text:
            return
        self._messages = self._messages + (Message(role=Role.USER, text=text),)
        self._mutated()

        if self._channel is not None and self._connected:
            try:
                self._channel.emit("process_command", command_payload(text, self._clock()))
                return
            except Exception as exc:
                logger.info("realtime emit failed, falling back to HTTP: %s", exc)
        self._submit_over_http(text)

    def shutdown(self) -> None:
        if self.dictation is not None:
            self.dictation.cancel()
        self._persistence.flush()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _submit_over_http(self, text: str) -> None:
        self._pending_requests += 1
        self._emit_change()

        def request() -> None:
            # Runs off the event loop; only the result crosses back.
            try:
                result = self._command_client.post_command(text)
            except Exception as exc:
                logger.warning("command %r failed: %s", text, exc)
                self._dispatch(lambda: self._finish_http(text, None))
                return
            self._dispatch(lambda: self._finish_http(text, result))

        self._run_in_background(request)

    def _finish_http(self, text: str, result: Optional[CommandResult]) -> None:
        self._pending_requests -= 1
        if result is None:
            self._reply(TRANSPORT_FAILURE_REPLY, speak=False)
        elif result.success:
            self._reply(result.response, data=result.data)
        else:
            logger.warning("server rejected command %r: %s", text, result.response)
            self._reply(result.response or ERROR_MESSAGES[COMMAND_FAILED], speak=False)

    def _reply(self, text: str, data: Any = None, speak: bool = True) -> None:
        self.apply_fragment(
            Fragment(complete_text=text, is_new_message=True, is_complete=True, data=data),
            speak=speak,
        )

    def _handle_action_completed(self, payload: Dict[str, Any]) -> None:
        action = payload.get("type")
        logger.info("action completed: %s", action)
        if action == "weather_fetched" and isinstance(payload.get("weather"), dict):
            self.weather = payload["weather"]
            self._emit_change()

    def _handle_open_url(self, payload: Dict[str, Any]) -> None:
        url = payload.get("url")
        if not url:
            return
        try:
            self._open_url(str(url))
        except Exception as exc:
            logger.warning("could not open %s: %s", url, exc)
            self._notifications.push(f"Could not open {url}", Severity.WARNING)
            return
        label = "Playing music" if payload.get("type") == "music" else "Opening website"
        self._notifications.push(f"{label}: {url}", Severity.INFO)

    def _mutated(self) -> None:
        self._persistence.request_save(lambda: self._messages)
        self._emit_change()

    def _emit_change(self) -> None:
        if self._on_change:
            self._on_change()
