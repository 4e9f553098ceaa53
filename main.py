"""Application entrypoint."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Callable, Set

from capture import MicrophoneSpeechCapture
from config import JsonConfigStore
from conversation_controller import ConversationController
from hotkey import ToggleHotkey
from models import DictationState, Role
from notifications import NotificationCenter
from persistence import PersistenceManager
from recognizer import DashscopeRecognizerAdapter
from recorder import SoundDeviceRecorder
from speech_output import DashscopeSpeaker, ReadAloudQueue
from storage import JsonFileStore
from timers import QtScheduler
from transport import HttpCommandClient, SocketIOChannel

try:
    from PySide6.QtCore import QObject, QSize, Signal
    from PySide6.QtGui import QAction, QBrush, QColor, QIcon, QPainter, QPixmap
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger("voice_chat")


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"
ICON_LISTENING = "#FF4444"
ICON_OFFLINE = "#FF8800"


def _run_in_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


class EventBridge(QObject):
    """Carries callables from worker threads onto the Qt thread."""

    call_signal = Signal(object)

    def __init__(self) -> None:
        super().__init__()
        self.call_signal.connect(self._run)

    def dispatch(self, fn: Callable[[], None]) -> None:
        self.call_signal.emit(fn)

    def _run(self, fn: Callable[[], None]) -> None:
        fn()


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        self.settings = self.config_store.load_settings()
        self.bridge = EventBridge()
        self.scheduler = QtScheduler()
        self._printed: Set[str] = set()

        self.read_aloud = ReadAloudQueue(
            DashscopeSpeaker(api_key=self.settings.api_key),
            volume=self.settings.volume,
            enabled=self.settings.audio_enabled,
        )
        self.controller = ConversationController(
            persistence=PersistenceManager(JsonFileStore(), self.scheduler),
            command_client=HttpCommandClient(self.settings.server_url),
            notifications=NotificationCenter(self.scheduler),
            read_aloud=self.read_aloud,
            on_change=self._render,
            run_in_background=_run_in_thread,
            dispatch=self.bridge.dispatch,
        )
        self.channel = SocketIOChannel(
            self.settings.server_url,
            on_event=lambda name, data: self.bridge.dispatch(
                lambda: self.controller.handle_event(name, data)
            ),
            on_connection=lambda up: self.bridge.dispatch(lambda: self._on_connection(up)),
        )
        self.controller.attach_channel(self.channel)

        self.capture = MicrophoneSpeechCapture(
            recorder=SoundDeviceRecorder(),
            recognizer=DashscopeRecognizerAdapter(api_key=self.settings.api_key),
            dispatch=self.bridge.dispatch,
        )
        self.dictation = self.controller.create_dictation(
            self.capture,
            self.scheduler,
            auto_stop=self.settings.auto_stop,
            silence_timeout_s=self.settings.silence_timeout_ms / 1000.0,
            on_state_change=self._on_dictation_state,
            submit_on_stop=True,
        )
        self.hotkey = ToggleHotkey(hotkey_name=self.settings.hotkey)

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_OFFLINE))
        self.tray.setToolTip("Voice Chat — Connecting...")
        self._setup_menu()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()

        listen_action = QAction("Start / Stop Listening", menu)
        listen_action.triggered.connect(self.dictation.toggle)
        menu.addAction(listen_action)

        send_action = QAction("Send Transcript", menu)
        send_action.triggered.connect(self.dictation.finalize)
        menu.addAction(send_action)

        auto_stop_action = QAction("Stop After Silence", menu)
        auto_stop_action.setCheckable(True)
        auto_stop_action.setChecked(self.settings.auto_stop)
        auto_stop_action.toggled.connect(self._set_auto_stop)
        menu.addAction(auto_stop_action)

        mute_action = QAction("Mute", menu)
        mute_action.setCheckable(True)
        mute_action.toggled.connect(self.read_aloud.set_muted)
        menu.addAction(mute_action)

        api_action = QAction("Set API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        clear_action = QAction("Clear Chat History", menu)
        clear_action.triggered.connect(self.controller.clear_history)
        menu.addAction(clear_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API Key")
        if not ok:
            return
        self.config_store.set_api_key(value)
        self.capture.replace_recognizer(DashscopeRecognizerAdapter(api_key=value))

    def _set_auto_stop(self, enabled: bool) -> None:
        self.dictation.set_auto_stop(enabled)
        self.settings.auto_stop = enabled
        self.config_store.save_settings(self.settings)

    # ------------------------------------------------------------------
    # Callbacks (already on the Qt thread)
    # ------------------------------------------------------------------

    def _on_connection(self, connected: bool) -> None:
        self.controller.set_connected(connected)
        if self.dictation.state == DictationState.IDLE:
            self.tray.setIcon(_create_icon(ICON_IDLE if connected else ICON_OFFLINE))
        self.tray.setToolTip("Voice Chat — Connected" if connected else "Voice Chat — Offline")

    def _on_dictation_state(self, from_state: DictationState, to_state: DictationState) -> None:
        if to_state in (DictationState.LISTENING, DictationState.AWAITING_SILENCE):
            self.tray.setIcon(_create_icon(ICON_LISTENING))
        elif to_state == DictationState.IDLE:
            color = ICON_IDLE if self.controller.connected else ICON_OFFLINE
            self.tray.setIcon(_create_icon(color))

    def _render(self) -> None:
        for message in self.controller.messages:
            if message.streaming or message.id in self._printed:
                continue
            self._printed.add(message.id)
            speaker = "you" if message.role == Role.USER else "assistant"
            print(f"[{message.created_at:%H:%M}] {speaker}: {message.text}", flush=True)

    def _read_console(self) -> None:
        for line in sys.stdin:
            text = line.strip()
            if text:
                self.bridge.dispatch(lambda text=text: self.controller.submit_command(text))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        self.controller.restore()
        self.channel.connect_in_background()
        try:
            self.hotkey.start(on_toggle=lambda: self.bridge.dispatch(self.dictation.toggle))
        except Exception as exc:
            logger.warning("hotkey disabled: %s", exc)
        threading.Thread(target=self._read_console, daemon=True).start()
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.controller.shutdown()
        self.read_aloud.close()
        self.channel.disconnect()
        self.scheduler.cancel_all()
        self.app.quit()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
