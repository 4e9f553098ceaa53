"""Ephemeral, self-expiring user notifications."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from config import NOTIFICATION_TTL_MS
from interfaces import Scheduler, TimerHandle
from models import Notification, Severity

logger = logging.getLogger(__name__)


class NotificationCenter:
    def __init__(
        self,
        scheduler: Scheduler,
        ttl_s: float = NOTIFICATION_TTL_MS / 1000.0,
        on_change: Optional[Callable[[List[Notification]], None]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._ttl_s = ttl_s
        self._on_change = on_change
        self._items: List[Notification] = []
        self._timers: Dict[str, TimerHandle] = {}

    @property
    def active(self) -> List[Notification]:
        return list(self._items)

    def push(self, message: str, severity: Severity = Severity.INFO) -> Notification:
        notification = Notification(message=message, severity=severity)
        self._items.append(notification)
        self._timers[notification.id] = self._scheduler.call_later(
            self._ttl_s, lambda: self._expire(notification.id)
        )
        logger.log(_LOG_LEVELS[severity], "notification: %s", message)
        self._emit()
        return notification

    def dismiss(self, notification_id: str) -> None:
        timer = self._timers.pop(notification_id, None)
        if timer is not None:
            timer.cancel()
        self._remove(notification_id)

    def _expire(self, notification_id: str) -> None:
        self._timers.pop(notification_id, None)
        self._remove(notification_id)

    def _remove(self, notification_id: str) -> None:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        if len(self._items) != before:
            self._emit()

    def _emit(self) -> None:
        if self._on_change:
            self._on_change(self.active)


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}
