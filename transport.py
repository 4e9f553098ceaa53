"""Realtime channel and HTTP fallback to the assistant server."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from config import REQUEST_TIMEOUT_S
from errors import TransportError
from models import CommandResult, Fragment

try:
    import socketio
except Exception:  # pragma: no cover
    socketio = None  # type: ignore

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], None]

SERVER_EVENTS = ("ai_response_chunk", "action_completed", "open_url")


def fragment_from_event(payload: Dict[str, Any]) -> Fragment:
    """Translate an ``ai_response_chunk`` payload into a Fragment."""
    chunk = payload.get("chunk")
    complete_text = payload.get("complete_text")
    return Fragment(
        chunk=str(chunk) if chunk is not None else None,
        complete_text=str(complete_text) if complete_text is not None else None,
        is_new_message=bool(payload.get("is_new_message", False)),
        is_complete=bool(payload.get("is_complete", False)),
    )


def command_payload(command: str, timestamp: datetime) -> Dict[str, Any]:
    return {"command": command, "timestamp": timestamp.isoformat()}


class SocketIOChannel:
    """Socket.IO client delivering server events to one handler.

    python-socketio invokes handlers on its own thread; ``on_event`` and
    ``on_connection`` are expected to hand work to the owning event loop.
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        on_connection: Optional[Callable[[bool], None]] = None,
    ) -> None:
        if socketio is None:
            raise RuntimeError("python-socketio is not installed")
        self._url = url
        self._on_event = on_event
        self._on_connection = on_connection
        self._client = socketio.Client(reconnection=True)
        self._client.on("connect", self._handle_connect)
        self._client.on("disconnect", self._handle_disconnect)
        for name in SERVER_EVENTS:
            self._client.on(name, self._make_handler(name))

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    def connect(self) -> None:
        """Connect, backing off and retrying until the server answers."""
        try:
            self._client.connect(self._url, wait_timeout=REQUEST_TIMEOUT_S, retry=True)
        except Exception as exc:
            # Commands fall back to HTTP meanwhile.
            logger.warning("realtime channel unavailable at %s: %s", self._url, exc)

    def connect_in_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.connect, name="socketio-connect", daemon=True)
        thread.start()
        return thread

    def disconnect(self) -> None:
        # Also aborts a reconnect loop that is still running.
        self._client.shutdown()

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self._client.emit(event, payload)

    def _make_handler(self, name: str) -> Callable[[Any], None]:
        def handler(data: Any = None) -> None:
            self._on_event(name, data if isinstance(data, dict) else {})

        return handler

    def _handle_connect(self) -> None:
        logger.info("connected to server")
        if self._on_connection:
            self._on_connection(True)

    def _handle_disconnect(self, *args: Any) -> None:
        logger.info("disconnected from server")
        if self._on_connection:
            self._on_connection(False)


class HttpCommandClient:
    def __init__(self, base_url: str, timeout: float = REQUEST_TIMEOUT_S) -> None:
        self._endpoint = base_url.rstrip("/") + "/api/command"
        self._timeout = timeout

    def post_command(self, command: str) -> CommandResult:
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(self._endpoint, json={"command": command, "type": "text"})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportError(f"command request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise TransportError("command response is not a JSON object")
        return CommandResult(
            success=bool(data.get("success", False)),
            response=str(data.get("response") or ""),
            data=data.get("data"),
        )
