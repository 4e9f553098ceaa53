"""Protocol interfaces for the collaborators the conversation engine drives."""

from __future__ import annotations

from queue import Queue
from typing import Any, Callable, Iterable, Optional, Protocol

from models import AudioFrame, CommandResult, RecognitionEvent

TranscriptCallback = Callable[[str], None]
CaptureErrorCallback = Callable[[str, str], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def items(self) -> Iterable[tuple[str, str]]: ...


class SpeechCapture(Protocol):
    def start(self, on_transcript: TranscriptCallback, on_error: CaptureErrorCallback) -> None: ...

    def stop(self) -> None:
        """Stop capturing; a last transcript may be delivered before returning."""


class Recorder(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class RecognizerAdapter(Protocol):
    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[RecognitionEvent], None],
    ) -> None: ...

    def stop(self) -> None: ...


class RealtimeChannel(Protocol):
    @property
    def connected(self) -> bool: ...

    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class CommandClient(Protocol):
    def post_command(self, command: str) -> CommandResult: ...


class Speaker(Protocol):
    def speak(self, text: str, volume: float) -> None: ...

    def cancel(self) -> None: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> str: ...

    def set_hotkey(self, hotkey: str) -> None: ...
