"""Size-bounded durable mirror of the conversation.

The whole conversation is kept under one key as a JSON document::

    {"messages": [{"id", "role", "text", "streaming", "data", "timestamp"}],
     "savedAt": ..., "trimmed": bool, "trimmedAt": ..., "emergencyTrim": bool}

Timestamps are ISO-8601 strings. Capacity is judged against the occupancy of
the whole store, since other tenants share the same quota. When the budget
would be exceeded the oldest messages are dropped, keeping the most recent
``trim_ratio`` share; if the write still fails only the last
``emergency_keep`` messages are written. Saves requested through
``request_save`` are debounced so a burst of stream fragments produces a
single write of the latest state.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from config import EMERGENCY_KEEP, HISTORY_KEY, SAVE_DEBOUNCE_MS, STORAGE_BUDGET_BYTES, TRIM_RATIO
from errors import HISTORY_CORRUPT, STORAGE_QUOTA_EXCEEDED, STORAGE_UNRECOVERABLE, StorageQuotaError
from interfaces import KeyValueStore, Scheduler, TimerHandle
from models import ConversationSnapshot, LoadResult, Message, Role, SaveResult, StorageUsage, utc_now
from storage import occupancy

logger = logging.getLogger(__name__)

MessagesProvider = Callable[[], Sequence[Message]]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(str(value))


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role.value,
        "text": message.text,
        "streaming": message.streaming,
        "data": message.data,
        "timestamp": message.created_at.isoformat(),
    }


def message_from_dict(item: Dict[str, Any]) -> Message:
    return Message(
        id=str(item["id"]),
        role=Role(item["role"]),
        text=str(item.get("text", "")),
        streaming=bool(item.get("streaming", False)),
        data=item.get("data"),
        created_at=datetime.fromisoformat(str(item["timestamp"])),
    )


def _coerce_unserializable(value: Any) -> str:
    # Stored as text; the original type does not survive a reload.
    logger.warning("storing non-JSON %s in message data as text", type(value).__name__)
    return str(value)


def snapshot_to_json(snapshot: ConversationSnapshot) -> str:
    doc: Dict[str, Any] = {
        "messages": [message_to_dict(m) for m in snapshot.messages],
        "savedAt": _iso(snapshot.saved_at),
    }
    if snapshot.trimmed:
        doc["trimmed"] = True
        doc["trimmedAt"] = _iso(snapshot.trimmed_at)
    if snapshot.emergency_trim:
        doc["emergencyTrim"] = True
    return json.dumps(doc, ensure_ascii=False, default=_coerce_unserializable)


def snapshot_from_json(raw: str) -> ConversationSnapshot:
    """Parse a stored document; raises ValueError, KeyError or TypeError if malformed."""
    doc = json.loads(raw)
    if not isinstance(doc, dict) or not isinstance(doc.get("messages"), list):
        raise ValueError("snapshot document has no message list")
    return ConversationSnapshot(
        messages=tuple(message_from_dict(item) for item in doc["messages"]),
        saved_at=_parse_iso(doc.get("savedAt")),
        trimmed=bool(doc.get("trimmed", False)),
        trimmed_at=_parse_iso(doc.get("trimmedAt")),
        emergency_trim=bool(doc.get("emergencyTrim", False)),
    )


def _tail(messages: Sequence[Message], count: int) -> tuple[Message, ...]:
    if count <= 0:
        return ()
    return tuple(messages[-count:])


class PersistenceManager:
    def __init__(
        self,
        store: KeyValueStore,
        scheduler: Scheduler,
        key: str = HISTORY_KEY,
        budget: int = STORAGE_BUDGET_BYTES,
        trim_ratio: float = TRIM_RATIO,
        emergency_keep: int = EMERGENCY_KEEP,
        debounce_s: float = SAVE_DEBOUNCE_MS / 1000.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._key = key
        self._budget = budget
        self._trim_ratio = trim_ratio
        self._emergency_keep = emergency_keep
        self._debounce_s = debounce_s
        self._clock = clock

        self._pending: Optional[TimerHandle] = None
        self._provider: Optional[MessagesProvider] = None
        self.last_result: Optional[SaveResult] = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def has_pending_save(self) -> bool:
        return self._pending is not None

    def save(self, messages: Sequence[Message]) -> SaveResult:
        messages = tuple(messages)
        now = self._clock()
        candidate = snapshot_to_json(ConversationSnapshot(messages=messages, saved_at=now))
        current = occupancy(self._store.items())

        try:
            if current + len(candidate) + len(self._key) > self._budget:
                keep = math.floor(len(messages) * self._trim_ratio)
                trimmed = ConversationSnapshot(
                    messages=_tail(messages, keep),
                    saved_at=now,
                    trimmed=True,
                    trimmed_at=now,
                )
                self._write(snapshot_to_json(trimmed))
                logger.info("chat history trimmed to %d messages due to storage limit", keep)
                return SaveResult(
                    success=True,
                    reason=STORAGE_QUOTA_EXCEEDED,
                    retained=keep,
                    trimmed=True,
                )
            self._write(candidate)
            return SaveResult(success=True, reason="ok", retained=len(messages))
        except Exception as exc:
            logger.warning("saving chat history failed, trying emergency trim: %s", exc)
            return self._emergency_save(messages, now)

    def load(self) -> LoadResult:
        raw = self._store.get(self._key)
        if raw is None:
            return LoadResult(snapshot=ConversationSnapshot())
        try:
            snapshot = snapshot_from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("stored chat history is corrupt, starting empty: %s", exc)
            return LoadResult(snapshot=ConversationSnapshot(), error=HISTORY_CORRUPT)
        logger.info("loaded %d messages from storage", len(snapshot.messages))
        if snapshot.trimmed:
            logger.info("chat history was previously trimmed on %s", _iso(snapshot.trimmed_at))
        return LoadResult(snapshot=snapshot)

    def clear(self) -> None:
        self._cancel_pending()
        self._provider = None
        self._store.remove(self._key)
        logger.info("chat history cleared")

    def request_save(self, provider: MessagesProvider) -> None:
        """Schedule a save; requests inside the debounce window collapse into one."""
        self._provider = provider
        self._cancel_pending()
        self._pending = self._scheduler.call_later(self._debounce_s, self._run_pending)

    def flush(self) -> Optional[SaveResult]:
        """Write a pending save immediately instead of waiting for its timer."""
        if self._pending is None:
            return None
        self._cancel_pending()
        return self._run_pending()

    def usage(self) -> StorageUsage:
        return StorageUsage(used=occupancy(self._store.items()), budget=self._budget)

    def _run_pending(self) -> Optional[SaveResult]:
        self._pending = None
        provider, self._provider = self._provider, None
        if provider is None:
            return None
        self.last_result = self.save(provider())
        return self.last_result

    def _emergency_save(self, messages: tuple[Message, ...], now: datetime) -> SaveResult:
        retained = _tail(messages, self._emergency_keep)
        snapshot = ConversationSnapshot(messages=retained, saved_at=now, emergency_trim=True)
        try:
            self._write(snapshot_to_json(snapshot))
        except Exception as exc:
            logger.error("failed to save even trimmed chat history: %s", exc)
            return SaveResult(success=False, reason=STORAGE_UNRECOVERABLE)
        logger.warning("chat history emergency-trimmed to %d messages", len(retained))
        return SaveResult(
            success=True,
            reason=STORAGE_QUOTA_EXCEEDED,
            retained=len(retained),
            emergency=True,
        )

    def _write(self, payload: str) -> None:
        others = occupancy((k, v) for k, v in self._store.items() if k != self._key)
        if others + len(self._key) + len(payload) > self._budget:
            raise StorageQuotaError(
                f"snapshot of {len(payload)} chars does not fit the {self._budget} budget"
            )
        self._store.set(self._key, payload)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
