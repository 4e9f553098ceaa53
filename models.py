"""Core data models for the conversation engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class DictationState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    AWAITING_SILENCE = "AWAITING_SILENCE"
    FINALIZED = "FINALIZED"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Message:
    role: Role
    text: str
    id: str = field(default_factory=new_message_id)
    streaming: bool = False
    data: Any = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Fragment:
    """One inbound piece of a streamed assistant reply."""

    chunk: Optional[str] = None
    complete_text: Optional[str] = None
    is_new_message: bool = False
    is_complete: bool = False
    data: Any = None


@dataclass(frozen=True)
class MergeOutcome:
    messages: tuple[Message, ...]
    message: Message
    created: bool
    finalized: bool


@dataclass(frozen=True)
class ConversationSnapshot:
    messages: tuple[Message, ...] = ()
    saved_at: Optional[datetime] = None
    trimmed: bool = False
    trimmed_at: Optional[datetime] = None
    emergency_trim: bool = False


@dataclass(frozen=True)
class Notification:
    message: str
    severity: Severity = Severity.INFO
    id: str = field(default_factory=new_message_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SaveResult:
    success: bool
    reason: str
    retained: int = 0
    trimmed: bool = False
    emergency: bool = False


@dataclass
class LoadResult:
    snapshot: ConversationSnapshot
    error: str = ""


@dataclass
class StorageUsage:
    used: int
    budget: int

    @property
    def percent(self) -> float:
        if self.budget <= 0:
            return 100.0
        return round(self.used * 100.0 / self.budget, 1)


@dataclass
class CommandResult:
    success: bool
    response: str
    data: Any = None


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    retryable: bool = False
