"""Cancellable one-shot timers on the Qt event loop."""

from __future__ import annotations

from typing import Callable, Optional

try:
    from PySide6.QtCore import QTimer
except Exception:  # pragma: no cover
    QTimer = None  # type: ignore


class QtTimerHandle:
    def __init__(
        self,
        timer: "QTimer",
        callback: Callable[[], None],
        on_done: Callable[["QtTimerHandle"], None],
    ) -> None:
        self._timer: Optional[QTimer] = timer
        self._callback = callback
        self._on_done = on_done
        timer.timeout.connect(self._fire)

    @property
    def active(self) -> bool:
        return self._timer is not None and self._timer.isActive()

    def cancel(self) -> None:
        timer = self._timer
        if timer is None:
            return
        self._timer = None
        timer.stop()
        timer.deleteLater()
        self._on_done(self)

    def _fire(self) -> None:
        if self._timer is None:
            return
        self.cancel()
        self._callback()


class QtScheduler:
    """Scheduler whose callbacks run on the thread owning the Qt event loop."""

    def __init__(self) -> None:
        if QTimer is None:
            raise RuntimeError("PySide6 is not installed")
        self._handles: set[QtTimerHandle] = set()

    @property
    def pending(self) -> int:
        return len(self._handles)

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> QtTimerHandle:
        timer = QTimer()
        timer.setSingleShot(True)
        handle = QtTimerHandle(timer, callback, self._handles.discard)
        self._handles.add(handle)
        timer.start(max(0, int(delay_s * 1000)))
        return handle

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
