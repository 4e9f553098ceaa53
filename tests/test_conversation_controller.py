from __future__ import annotations

import json
from typing import Any, Callable, Optional

from conversation_controller import ConversationController
from errors import ERROR_MESSAGES, COMMAND_FAILED, TRANSPORT_FAILURE_REPLY, TransportError
from fakes import FakeScheduler
from models import CommandResult, DictationState, Role, Severity
from notifications import NotificationCenter
from persistence import PersistenceManager
from storage import InMemoryStore

KEY = "chat"


class FakeChannel:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.emitted: list[tuple[str, dict]] = []

    @property
    def connected(self) -> bool:
        return True

    def emit(self, event: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.emitted.append((event, payload))


class FakeCommandClient:
    def __init__(self, result: CommandResult | None = None, error: Exception | None = None) -> None:
        self.result = result or CommandResult(success=True, response="ok")
        self.error = error
        self.calls: list[str] = []

    def post_command(self, command: str) -> CommandResult:
        self.calls.append(command)
        if self.error is not None:
            raise self.error
        return self.result


class FakeReadAloud:
    def __init__(self) -> None:
        self.spoken: list[str] = []

    def speak(self, text: str) -> bool:
        self.spoken.append(text)
        return True


class FakeCapture:
    def __init__(self) -> None:
        self.on_transcript: Optional[Callable[[str], None]] = None

    def start(self, on_transcript: Callable[[str], None], on_error: Callable[[str, str], None]) -> None:
        self.on_transcript = on_transcript

    def stop(self) -> None:
        pass


Harness = tuple[ConversationController, InMemoryStore, FakeReadAloud, NotificationCenter, list[str], list[int]]


def _controller(
    scheduler: FakeScheduler,
    store: Optional[InMemoryStore] = None,
    channel: Optional[FakeChannel] = None,
    client: Optional[FakeCommandClient] = None,
    connected: bool = True,
    **kwargs: Any,
) -> Harness:
    store = store if store is not None else InMemoryStore()
    opened: list[str] = []
    changes: list[int] = []
    read_aloud = FakeReadAloud()
    notifications = NotificationCenter(scheduler)
    controller = ConversationController(
        persistence=PersistenceManager(store, scheduler, key=KEY),
        command_client=client or FakeCommandClient(),
        notifications=notifications,
        channel=channel,
        read_aloud=read_aloud,
        open_url=opened.append,
        on_change=lambda: changes.append(1),
        **kwargs,
    )
    controller.set_connected(connected)
    return controller, store, read_aloud, notifications, opened, changes


def _chunk(controller: ConversationController, **payload: Any) -> None:
    controller.handle_event("ai_response_chunk", payload)


def test_command_goes_over_realtime_channel(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    client = FakeCommandClient()
    controller, _, _, _, _, _ = _controller(scheduler, channel=channel, client=client)

    controller.submit_command("  what's the weather ")

    assert [(m.role, m.text) for m in controller.messages] == [(Role.USER, "what's the weather")]
    assert controller.messages[0].streaming is False
    assert len(channel.emitted) == 1
    event, payload = channel.emitted[0]
    assert event == "process_command"
    assert payload["command"] == "what's the weather"
    assert "timestamp" in payload
    assert client.calls == []


def test_blank_command_is_ignored(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    controller, _, _, _, _, _ = _controller(scheduler, channel=channel)
    controller.submit_command("   ")
    assert controller.messages == ()
    assert channel.emitted == []


def test_streamed_reply_is_merged_spoken_and_flushed(scheduler: FakeScheduler) -> None:
    controller, store, read_aloud, _, _, _ = _controller(scheduler, channel=FakeChannel())
    controller.submit_command("hi")

    _chunk(controller, chunk="Hel", is_new_message=True, is_complete=False)
    _chunk(controller, chunk="lo", is_new_message=False, is_complete=False)
    assert read_aloud.spoken == []
    assert store.get(KEY) is None

    _chunk(controller, chunk="!", is_new_message=False, is_complete=True)

    reply = controller.messages[-1]
    assert len(controller.messages) == 2
    assert (reply.role, reply.text, reply.streaming) == (Role.ASSISTANT, "Hello!", False)
    assert read_aloud.spoken == ["Hello!"]
    doc = json.loads(store.get(KEY))
    assert [m["text"] for m in doc["messages"]] == ["hi", "Hello!"]


def test_stream_saves_are_debounced(scheduler: FakeScheduler) -> None:
    class CountingStore(InMemoryStore):
        writes = 0

        def set(self, key: str, value: str) -> None:
            super().set(key, value)
            CountingStore.writes += 1

    store = CountingStore()
    controller, _, _, _, _, _ = _controller(scheduler, store=store, channel=FakeChannel())
    _chunk(controller, chunk="a", is_new_message=True)
    for letter in "bcdefg":
        _chunk(controller, chunk=letter)

    assert CountingStore.writes == 0
    scheduler.advance(0.2)
    assert CountingStore.writes == 1
    assert json.loads(store.get(KEY))["messages"][0]["text"] == "abcdefg"


def test_http_fallback_when_disconnected(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    client = FakeCommandClient(CommandResult(success=True, response="Opening YouTube", data={"url": "x"}))
    controller, _, read_aloud, _, _, _ = _controller(
        scheduler, channel=channel, client=client, connected=False
    )

    controller.submit_command("open youtube")

    assert channel.emitted == []
    assert client.calls == ["open youtube"]
    assert controller.loading is False
    reply = controller.messages[-1]
    assert (reply.role, reply.text, reply.streaming, reply.data) == (
        Role.ASSISTANT,
        "Opening YouTube",
        False,
        {"url": "x"},
    )
    assert read_aloud.spoken == ["Opening YouTube"]


def test_http_fallback_when_emit_fails(scheduler: FakeScheduler) -> None:
    client = FakeCommandClient()
    controller, _, _, _, _, _ = _controller(scheduler, channel=FakeChannel(fail=True), client=client)
    controller.submit_command("ping")
    assert client.calls == ["ping"]
    assert controller.messages[-1].text == "ok"


def test_http_failure_response_becomes_assistant_message(scheduler: FakeScheduler) -> None:
    client = FakeCommandClient(CommandResult(success=False, response=""))
    controller, _, read_aloud, _, _, _ = _controller(scheduler, client=client, connected=False)

    controller.submit_command("do something")

    assert controller.messages[-1].role == Role.ASSISTANT
    assert controller.messages[-1].text == ERROR_MESSAGES[COMMAND_FAILED]
    assert read_aloud.spoken == []


def test_transport_error_becomes_apology(scheduler: FakeScheduler) -> None:
    client = FakeCommandClient(error=TransportError("connection refused"))
    controller, _, _, _, _, _ = _controller(scheduler, client=client, connected=False)

    controller.submit_command("hello")

    assert [m.text for m in controller.messages] == ["hello", TRANSPORT_FAILURE_REPLY]
    assert controller.loading is False


def test_restore_loads_history_and_closes_streams(scheduler: FakeScheduler) -> None:
    store = InMemoryStore()
    first, _, _, _, _, _ = _controller(scheduler, store=store, channel=FakeChannel())
    first.submit_command("hi")
    _chunk(first, chunk="still typing", is_new_message=True)
    scheduler.advance(0.2)

    second, _, _, _, _, changes = _controller(scheduler, store=store, channel=FakeChannel())
    result = second.restore()

    assert result.error == ""
    assert [m.text for m in second.messages] == ["hi", "still typing"]
    assert second.messages[-1].streaming is False
    assert changes

    _chunk(second, chunk="next", is_new_message=False)
    assert [m.text for m in second.messages] == ["hi", "still typing", "next"]


def test_restore_from_corrupt_history_starts_empty(scheduler: FakeScheduler) -> None:
    store = InMemoryStore(initial={KEY: "{{{"})
    controller, _, _, _, _, _ = _controller(scheduler, store=store, channel=FakeChannel())

    result = controller.restore()
    controller.submit_command("still works")
    scheduler.advance(0.2)

    assert result.snapshot.messages == ()
    assert [m.text for m in controller.messages] == ["still works"]
    assert json.loads(store.get(KEY))["messages"][0]["text"] == "still works"


def test_clear_history(scheduler: FakeScheduler) -> None:
    controller, store, _, _, _, _ = _controller(scheduler, channel=FakeChannel())
    controller.submit_command("hi")
    scheduler.advance(0.2)
    controller.submit_command("again")

    controller.clear_history()
    scheduler.advance(0.2)

    assert controller.messages == ()
    assert store.get(KEY) is None
    assert controller.storage_usage().used == 0


def test_open_url_opens_and_notifies(scheduler: FakeScheduler) -> None:
    controller, _, _, notifications, opened, _ = _controller(scheduler, channel=FakeChannel())

    controller.handle_event("open_url", {"url": "https://music.example/x", "type": "music"})
    controller.handle_event("open_url", {"url": "https://example.com"})
    controller.handle_event("open_url", {})

    assert opened == ["https://music.example/x", "https://example.com"]
    messages = [n.message for n in notifications.active]
    assert messages[0].startswith("Playing music")
    assert messages[1].startswith("Opening website")
    assert all(n.severity == Severity.INFO for n in notifications.active)


def test_open_url_failure_is_reported(scheduler: FakeScheduler) -> None:
    def broken(url: str) -> None:
        raise OSError("no browser")

    controller, _, _, notifications, _, _ = _controller(scheduler, channel=FakeChannel())
    controller._open_url = broken
    controller.handle_event("open_url", {"url": "https://example.com"})
    assert notifications.active[0].severity == Severity.WARNING


def test_weather_action_updates_state(scheduler: FakeScheduler) -> None:
    controller, _, _, _, _, _ = _controller(scheduler, channel=FakeChannel())
    controller.handle_event("action_completed", {"type": "music_playing"})
    assert controller.weather is None

    controller.handle_event(
        "action_completed", {"type": "weather_fetched", "weather": {"temp": 28, "location": "Pune"}}
    )
    assert controller.weather == {"temp": 28, "location": "Pune"}
    assert controller.messages == ()


def test_dictation_finalize_submits_user_message(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    controller, _, _, notifications, _, _ = _controller(scheduler, channel=channel)
    capture = FakeCapture()
    session = controller.create_dictation(capture, scheduler, silence_timeout_s=1.0)

    session.start()
    capture.on_transcript("play some jazz")
    session.finalize()

    assert session.state == DictationState.IDLE
    assert [(m.role, m.text) for m in controller.messages] == [(Role.USER, "play some jazz")]
    assert channel.emitted[0][1]["command"] == "play some jazz"


def test_dictation_silence_notice_reaches_notifications(scheduler: FakeScheduler) -> None:
    controller, _, _, notifications, _, _ = _controller(scheduler, channel=FakeChannel())
    capture = FakeCapture()
    session = controller.create_dictation(capture, scheduler, silence_timeout_s=1.0)

    session.start()
    capture.on_transcript("hello")
    scheduler.advance(1.5)

    assert session.state == DictationState.IDLE
    assert [n.severity for n in notifications.active] == [Severity.INFO]


def test_shutdown_flushes_pending_save(scheduler: FakeScheduler) -> None:
    controller, store, _, _, _, _ = _controller(scheduler, channel=FakeChannel())
    controller.submit_command("bye")
    controller.shutdown()
    assert json.loads(store.get(KEY))["messages"][0]["text"] == "bye"


def test_http_command_runs_off_loop_and_reply_is_dispatched_back(scheduler: FakeScheduler) -> None:
    background: list[Callable[[], None]] = []
    dispatched: list[Callable[[], None]] = []
    client = FakeCommandClient(CommandResult(success=True, response="It is sunny"))
    controller, _, read_aloud, _, _, changes = _controller(
        scheduler,
        client=client,
        connected=False,
        run_in_background=background.append,
        dispatch=dispatched.append,
    )

    controller.submit_command("weather")

    assert controller.loading is True
    assert client.calls == []
    assert [m.text for m in controller.messages] == ["weather"]
    # Timers keep firing while the request is outstanding.
    scheduler.advance(0.2)

    background.pop()()
    assert client.calls == ["weather"]
    assert controller.loading is True
    assert len(controller.messages) == 1

    dispatched.pop()()
    assert controller.loading is False
    assert controller.messages[-1].text == "It is sunny"
    assert read_aloud.spoken == ["It is sunny"]
    assert changes


def test_transport_error_from_background_request(scheduler: FakeScheduler) -> None:
    background: list[Callable[[], None]] = []
    dispatched: list[Callable[[], None]] = []
    client = FakeCommandClient(error=TransportError("timed out"))
    controller, _, _, _, _, _ = _controller(
        scheduler,
        client=client,
        connected=False,
        run_in_background=background.append,
        dispatch=dispatched.append,
    )

    controller.submit_command("first")
    controller.submit_command("second")
    assert controller.loading is True

    for work in background:
        work()
    dispatched[0]()
    assert controller.loading is True
    dispatched[1]()

    assert controller.loading is False
    assert [m.text for m in controller.messages][-2:] == [TRANSPORT_FAILURE_REPLY, TRANSPORT_FAILURE_REPLY]


def test_dictation_submits_on_silence_when_enabled(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    controller, _, _, _, _, _ = _controller(scheduler, channel=channel)
    capture = FakeCapture()
    session = controller.create_dictation(capture, scheduler, silence_timeout_s=1.0, submit_on_stop=True)

    session.start()
    assert capture.on_transcript is not None
    capture.on_transcript("lights off")
    scheduler.advance(1.5)

    assert [(m.role, m.text) for m in controller.messages] == [(Role.USER, "lights off")]
    assert channel.emitted[0][1]["command"] == "lights off"


def test_shutdown_does_not_submit_open_dictation(scheduler: FakeScheduler) -> None:
    channel = FakeChannel()
    controller, _, _, _, _, _ = _controller(scheduler, channel=channel)
    capture = FakeCapture()
    session = controller.create_dictation(capture, scheduler, submit_on_stop=True)
    session.start()
    assert capture.on_transcript is not None
    capture.on_transcript("unfinished")

    controller.shutdown()

    assert session.state == DictationState.IDLE
    assert controller.messages == ()
