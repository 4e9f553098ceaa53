"""Global dictation toggle key based on pynput."""

from __future__ import annotations

import threading
from typing import Callable, Optional

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore


class ToggleHotkey:
    """Fire ``on_toggle`` once per press of the configured key.

    Auto-repeat presses while the key is held are ignored until release.
    Callbacks run on the pynput listener thread.
    """

    def __init__(self, hotkey_name: str = "Key.alt_l") -> None:
        self._hotkey_name = hotkey_name
        self._listener: Optional[object] = None
        self._held = False
        self._lock = threading.Lock()

    @property
    def hotkey_name(self) -> str:
        return self._hotkey_name

    def start(self, on_toggle: Callable[[], None]) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._listener = keyboard.Listener(
            on_press=lambda key: self._handle_press(key, on_toggle),
            on_release=self._handle_release,
        )
        self._listener.start()

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None

    def _handle_press(self, key: object, on_toggle: Callable[[], None]) -> None:
        if str(key) != self._hotkey_name:
            return
        with self._lock:
            if self._held:
                return
            self._held = True
        on_toggle()

    def _handle_release(self, key: object) -> None:
        if str(key) != self._hotkey_name:
            return
        with self._lock:
            self._held = False
