"""Tests for opencode_link.client.coordinator - OpenCodeClient."""

import asyncio
import json

import pytest

from opencode_link.client.config import ClientConfig, ConfigManager
from opencode_link.client.coordinator import OpenCodeClient
from opencode_link.client.host import DirectHostAdapter
from opencode_link.client.http import OpenCodeHttpClient
from opencode_link.client.models import SessionStatus
from opencode_link.client.observers import NoticeKind, PresentationObserver
from opencode_link.client.pause import PauseController
from opencode_link.errors import NoActiveSessionError, OpenCodeError, StateError
from opencode_link.events import decode_line
from opencode_link.tests.fakes import (
    FakeServer,
    RecordingObserver,
    never_returns,
    sse_line,
    wait_for,
)


def _make_client(server, tmp_path, *, sleep=asyncio.sleep, observer=None, **config_values):
    config = ConfigManager(path=tmp_path / "client.json", config=ClientConfig(**config_values))
    transport = OpenCodeHttpClient(
        "http://localhost:4096",
        http_transport=server.transport(),
        sleep=never_returns,
    )
    observer = observer or RecordingObserver()
    client = OpenCodeClient(
        config,
        transport=transport,
        observer=observer,
        startup_delay=0,
        sleep=sleep,
    )
    return client, observer


def _text_delta(delta, session_id="ses_1"):
    return sse_line("message.part.updated", {
        "part": {"type": "text", "sessionID": session_id, "text": delta},
        "delta": delta,
    })


def _status(status_type, session_id="ses_1"):
    return sse_line("session.status", {"sessionID": session_id, "status": {"type": status_type}})


def _feed(client, line):
    client.handle_event(decode_line(line))


# ============================================================
# Connection
# ============================================================

class TestConnection:

    @pytest.mark.asyncio
    async def test_healthy_server_connects_to_idle(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            assert client.status == SessionStatus.IDLE
            assert observer.statuses == [SessionStatus.IDLE]
            assert client.pause.status == SessionStatus.IDLE
            await wait_for(lambda: server.count("GET", "/global/event") == 1)
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_unhealthy_server_retries_at_interval(self, tmp_path):
        server = FakeServer()
        server.healthy = False
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) >= 3:
                await asyncio.Event().wait()

        client, observer = _make_client(server, tmp_path, sleep=fake_sleep, reconnect_interval_ms=1000)

        client.start()
        try:
            await wait_for(lambda: len(delays) == 3)
            assert server.count("GET", "/global/health") == 3
            assert delays == [1.0, 1.0, 1.0]
            assert client.status == SessionStatus.DISCONNECTED
            assert observer.statuses == []
            assert not client.is_ready
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_startup_delay_precedes_first_check(self, tmp_path):
        server = FakeServer()
        server.healthy = False
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            await asyncio.Event().wait()

        config = ConfigManager(path=tmp_path / "client.json")
        transport = OpenCodeHttpClient("http://localhost:4096", http_transport=server.transport())
        client = OpenCodeClient(config, transport=transport, sleep=fake_sleep)

        client.start()
        try:
            await wait_for(lambda: delays == [1.0])
            assert server.count("GET", "/global/health") == 0
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_refused_connection_stays_disconnected(self, tmp_path):
        server = FakeServer()
        server.refuse_connections = True
        client, _ = _make_client(server, tmp_path, auto_reconnect=False)

        assert await client.connect_now() is False
        assert client.status == SessionStatus.DISCONNECTED
        await client.shutdown()

    @pytest.mark.asyncio
    async def test_auto_reconnect_off_waits_for_connect_now(self, tmp_path):
        server = FakeServer()
        server.healthy = False
        server.go_live()
        client, _ = _make_client(server, tmp_path, auto_reconnect=False)

        client.start()
        try:
            await wait_for(lambda: server.count("GET", "/global/health") == 1)
            await asyncio.sleep(0.05)
            assert server.count("GET", "/global/health") == 1
            assert client.status == SessionStatus.DISCONNECTED

            server.healthy = True
            assert await client.connect_now() is True
            assert client.is_ready
            assert client.status == SessionStatus.IDLE
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_during_health_check_leaves_nothing_running(self, tmp_path):
        server = FakeServer()
        server.go_live()
        server.hold_health()
        retry_sleeps = []

        async def record_sleep(delay):
            retry_sleeps.append(delay)
            await asyncio.sleep(0)

        config = ConfigManager(path=tmp_path / "client.json")
        transport = OpenCodeHttpClient(
            "http://localhost:4096",
            http_transport=server.transport(),
            sleep=record_sleep,
        )
        observer = RecordingObserver()
        client = OpenCodeClient(config, transport=transport, observer=observer)

        attempt = asyncio.create_task(client.connect_now())
        await server.health_requested.wait()
        await client.shutdown()
        server.release_health()

        assert await attempt is False
        await asyncio.sleep(0.05)

        assert client.status == SessionStatus.DISCONNECTED
        assert not client.is_ready
        assert not transport.is_connected
        assert not transport.is_streaming
        assert server.count("GET", "/global/event") == 0
        assert retry_sleeps == []
        assert SessionStatus.IDLE not in observer.statuses

    @pytest.mark.asyncio
    async def test_lifecycle_calls_fail_after_shutdown(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, _ = _make_client(server, tmp_path)
        client.start()
        await wait_for(lambda: client.is_ready)
        await client.shutdown()

        with pytest.raises(OpenCodeError):
            await client.create_session()
        assert client.current_session is None
        assert client.status == SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_now_after_shutdown_raises(self, tmp_path):
        client, _ = _make_client(FakeServer(), tmp_path)
        await client.shutdown()

        with pytest.raises(StateError):
            await client.connect_now()

    @pytest.mark.asyncio
    async def test_resumes_last_session(self, tmp_path):
        server = FakeServer()
        server.go_live()
        server.add_session("ses_old", "Earlier work")
        client, _ = _make_client(server, tmp_path, last_session_id="ses_old")

        client.start()
        try:
            await wait_for(lambda: client.current_session is not None)
            assert client.current_session.id == "ses_old"
            assert client.status == SessionStatus.IDLE
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_missing_last_session_is_not_fatal(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, _ = _make_client(server, tmp_path, last_session_id="ses_gone")

        client.start()
        try:
            await wait_for(lambda: server.count("GET", "/session/ses_gone") == 1)
            await client.flush()
            assert client.is_ready
            assert client.current_session is None
            assert client.status == SessionStatus.IDLE
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_disconnects_and_is_idempotent(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)

        client.start()
        await wait_for(lambda: client.is_ready)

        await client.shutdown()
        await client.shutdown()

        assert client.status == SessionStatus.DISCONNECTED
        assert client.transport.is_closed
        assert not client.transport.is_streaming
        assert not client.is_ready
        assert observer.statuses == [SessionStatus.IDLE, SessionStatus.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_async_context_manager(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, _ = _make_client(server, tmp_path)

        async with client:
            await wait_for(lambda: client.is_ready)

        assert client.transport.is_closed


# ============================================================
# Prompt round trip
# ============================================================

class TestPromptRoundTrip:

    @pytest.mark.asyncio
    async def test_prompt_and_streamed_reply(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)
        content = []
        completed = []
        client.set_content_listener(content.append)
        client.set_response_complete_listener(lambda: completed.append(True))

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            session = await client.create_session()
            observer.statuses.clear()

            ack = await client.send_prompt("hello")
            assert ack.ok
            assert client.status == SessionStatus.BUSY

            server.push(_status("busy", session.id))
            server.push(_text_delta("Hi", session.id))
            server.push(_status("idle", session.id))

            await wait_for(lambda: completed)
            await client.flush()

            assert observer.statuses == [
                SessionStatus.BUSY,
                SessionStatus.GENERATING,
                SessionStatus.IDLE,
            ]
            assert content == ["Hi"]
            assert observer.user_messages == ["hello"]
            assert server.bodies("POST", f"/session/{session.id}/message") == [
                {"parts": [{"type": "text", "text": "hello"}]}
            ]
            assert (NoticeKind.SYSTEM, "Ready for input") in observer.notices
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_create_session_persists_last_session_id(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, _ = _make_client(server, tmp_path)

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            session = await client.create_session()
        finally:
            await client.shutdown()

        assert client.config.last_session_id == session.id
        saved = json.loads((tmp_path / "client.json").read_text())
        assert saved["last_session_id"] == session.id

    @pytest.mark.asyncio
    async def test_send_without_session_raises_and_changes_nothing(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)
        client.sessions.on_connected()
        observer.statuses.clear()

        with pytest.raises(NoActiveSessionError):
            await client.send_prompt("hello")

        assert client.status == SessionStatus.IDLE
        assert observer.statuses == []
        assert observer.user_messages == []

    @pytest.mark.asyncio
    async def test_rejected_prompt_returns_to_idle_with_error(self, tmp_path):
        server = FakeServer()
        server.prompt_status = 500
        client, observer = _make_client(server, tmp_path)
        await client.create_session()
        observer.statuses.clear()

        ack = await client.send_prompt("hello")

        assert ack.is_error
        assert ack.message == "Error: Failed to send message: 500"
        assert observer.errors == [ack.message]
        assert observer.statuses == [SessionStatus.BUSY, SessionStatus.IDLE]
        assert client.status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_send_prompt_clears_typing(self, tmp_path):
        client, _ = _make_client(FakeServer(), tmp_path)
        await client.create_session()
        client.pause.set_user_typing(True)

        await client.send_prompt("hello")

        assert not client.pause.is_user_typing()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("events", [
        [],
        ["busy"],
        ["busy", "delta"],
        ["delta", "delta"],
    ])
    async def test_cancel_always_ends_idle(self, tmp_path, events):
        server = FakeServer()
        client, _ = _make_client(server, tmp_path)
        session = await client.create_session()
        await client.send_prompt("hello")
        for name in events:
            _feed(client, _status("busy") if name == "busy" else _text_delta("x"))

        await client.cancel()

        assert client.status == SessionStatus.IDLE
        assert client.pause.status == SessionStatus.IDLE
        assert server.count("POST", f"/session/{session.id}/abort") == 1

    @pytest.mark.asyncio
    async def test_get_session_messages(self, tmp_path):
        server = FakeServer()
        client, _ = _make_client(server, tmp_path)

        with pytest.raises(NoActiveSessionError):
            await client.get_session_messages()

        session = await client.create_session()
        server.messages[session.id] = [{"info": {"id": "msg_1"}, "parts": []}]

        assert await client.get_session_messages() == server.messages[session.id]
        assert await client.get_session_messages("unknown") == []


# ============================================================
# Serialized dispatch
# ============================================================

class TestSerializedDispatch:
    """Stream events and lifecycle mutations apply one at a time, in order."""

    @pytest.mark.asyncio
    async def test_prompt_mutation_lands_after_queued_events(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            await client.create_session()
            observer.statuses.clear()

            client._on_stream_line(_text_delta("Hi"))
            client._on_stream_line(_status("idle"))
            # Queued, not yet applied
            assert client.status == SessionStatus.IDLE

            await client.send_prompt("next")
            await client.flush()

            assert observer.statuses == [
                SessionStatus.GENERATING,
                SessionStatus.IDLE,
                SessionStatus.BUSY,
            ]
            assert client.status == SessionStatus.BUSY
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_idle_lands_after_queued_events(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            await client.create_session()
            observer.statuses.clear()

            client._on_stream_line(_status("busy"))
            client._on_stream_line(_text_delta("Hi"))
            assert client.status == SessionStatus.IDLE

            await client.cancel()
            await client.flush()

            assert observer.statuses == [
                SessionStatus.BUSY,
                SessionStatus.GENERATING,
                SessionStatus.IDLE,
            ]
            assert client.status == SessionStatus.IDLE
        finally:
            await client.shutdown()

    @pytest.mark.asyncio
    async def test_events_apply_in_arrival_order(self, tmp_path):
        server = FakeServer()
        server.go_live()
        client, observer = _make_client(server, tmp_path)
        content = []
        client.set_content_listener(content.append)

        client.start()
        try:
            await wait_for(lambda: client.is_ready)
            observer.statuses.clear()

            for line in (_status("busy"), _text_delta("a"), _text_delta("b"),
                         _status("idle"), _status("busy")):
                client._on_stream_line(line)
            await client.flush()

            assert observer.statuses == [
                SessionStatus.BUSY,
                SessionStatus.GENERATING,
                SessionStatus.IDLE,
                SessionStatus.BUSY,
            ]
            assert content == ["a", "b"]
        finally:
            await client.shutdown()


# ============================================================
# Event routing
# ============================================================

class TestEventRouting:

    def test_repeated_deltas_notify_once(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)
        content = []
        client.set_content_listener(content.append)

        for chunk in ("a", "b", "c"):
            _feed(client, _text_delta(chunk))

        assert observer.statuses == [SessionStatus.GENERATING]
        assert content == ["a", "b", "c"]

    def test_busy_after_generating_is_ignored(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)

        _feed(client, _text_delta("a"))
        _feed(client, _status("busy"))
        _feed(client, _status("busy"))
        _feed(client, _status("idle"))

        assert observer.statuses == [SessionStatus.GENERATING, SessionStatus.IDLE]

    def test_reasoning_delta_counts_as_activity_without_content(self, tmp_path):
        client, _ = _make_client(FakeServer(), tmp_path)
        content = []
        client.set_content_listener(content.append)

        _feed(client, sse_line("message.part.updated", {
            "part": {"type": "reasoning", "text": "thinking"},
            "delta": "thinking",
        }))

        assert client.status == SessionStatus.GENERATING
        assert client.pause.status == SessionStatus.GENERATING
        assert content == []

    def test_empty_text_delta_is_not_forwarded(self, tmp_path):
        client, _ = _make_client(FakeServer(), tmp_path)
        content = []
        client.set_content_listener(content.append)

        _feed(client, _text_delta(""))

        assert client.status == SessionStatus.GENERATING
        assert content == []

    def test_text_part_without_delta_is_ignored(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)
        content = []
        client.set_content_listener(content.append)

        _feed(client, sse_line("message.part.updated", {"part": {"type": "text", "text": "full"}}))

        assert content == []
        assert observer.statuses == []

    def test_discrete_notices(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)

        _feed(client, sse_line("server.connected", {}))
        _feed(client, sse_line("message.part.updated", {
            "part": {"type": "tool", "tool": "bash", "state": {"status": "running"}},
        }))
        _feed(client, sse_line("message.part.updated", {
            "part": {"type": "step-start", "title": "Planning"},
        }))
        _feed(client, sse_line("message.part.updated", {
            "part": {"type": "file", "filename": "src/app/main.py"},
        }))
        _feed(client, _status("busy"))

        assert observer.notices == [
            (NoticeKind.SYSTEM, "Connected to OpenCode"),
            (NoticeKind.TOOL, "bash: running"),
            (NoticeKind.STEP, "Step: Planning"),
            (NoticeKind.FILE, "File: main.py"),
            (NoticeKind.SYSTEM, "Processing..."),
        ]

    def test_tool_without_state_has_no_notice(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)

        _feed(client, sse_line("message.part.updated", {"part": {"type": "tool", "tool": "bash"}}))

        assert observer.notices == []

    def test_session_error_notice(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)

        _feed(client, sse_line("session.error", {"error": {"name": "APIError", "data": {"message": "rate limited"}}}))
        _feed(client, sse_line("session.error", {}))

        assert observer.errors == ["rate limited", "Session error occurred"]

    def test_heartbeat_and_unknown_events_are_silent(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)
        client.sessions.on_connected()
        observer.statuses.clear()
        content = []
        client.set_content_listener(content.append)

        _feed(client, sse_line("server.heartbeat", {}))
        _feed(client, sse_line("message.created", {"info": {"id": "msg_1"}}))
        _feed(client, sse_line("lsp.updated", {"x": 1}))
        _feed(client, _status("retry"))

        assert client.status == SessionStatus.IDLE
        assert observer.statuses == []
        assert observer.notices == []
        assert observer.errors == []
        assert content == []

    def test_malformed_stream_line_is_skipped(self, tmp_path):
        client, observer = _make_client(FakeServer(), tmp_path)

        client._on_stream_line("data: {not json")
        client._on_stream_line(_text_delta("ok"))

        assert client.status == SessionStatus.GENERATING

    def test_failing_observer_does_not_break_routing(self, tmp_path):
        class BrokenObserver(PresentationObserver):
            def on_status_change(self, status):
                raise RuntimeError("render failed")

            def on_discrete_notice(self, kind, text):
                raise RuntimeError("render failed")

        client, _ = _make_client(FakeServer(), tmp_path, observer=BrokenObserver())

        def broken_listener(text):
            raise RuntimeError("listener failed")

        client.set_content_listener(broken_listener)

        _feed(client, _status("busy"))
        _feed(client, _text_delta("Hi"))
        _feed(client, _status("idle"))

        assert client.status == SessionStatus.IDLE

    def test_clear_content_listeners(self, tmp_path):
        client, _ = _make_client(FakeServer(), tmp_path)
        content = []
        completed = []
        client.set_content_listener(content.append)
        client.set_response_complete_listener(lambda: completed.append(True))
        client.clear_content_listeners()

        _feed(client, _text_delta("Hi"))
        _feed(client, _status("idle"))

        assert content == []
        assert completed == []

    def test_callbacks_go_through_host_schedule(self, tmp_path):
        scheduled = []

        class QueueingHost(DirectHostAdapter):
            def schedule_on_main(self, fn):
                scheduled.append(fn)

        server = FakeServer()
        config = ConfigManager(path=tmp_path / "client.json")
        transport = OpenCodeHttpClient("http://localhost:4096", http_transport=server.transport())
        observer = RecordingObserver()
        client = OpenCodeClient(config, transport=transport, host=QueueingHost(), observer=observer)

        _feed(client, _status("busy"))

        assert observer.statuses == []
        assert client.status == SessionStatus.BUSY

        for fn in scheduled:
            fn()
        assert observer.statuses == [SessionStatus.BUSY]
        assert observer.notices == [(NoticeKind.SYSTEM, "Processing...")]


class TestPauseIntegration:

    def test_pause_follows_session_status(self, tmp_path):
        now = [0.0]
        host = DirectHostAdapter()
        pause = PauseController(host, clock=lambda: now[0])
        config = ConfigManager(path=tmp_path / "client.json")
        transport = OpenCodeHttpClient("http://localhost:4096", http_transport=FakeServer().transport())
        client = OpenCodeClient(config, transport=transport, host=host, pause=pause)

        client.sessions.on_connected()
        # First ready poll starts the grace period
        assert pause.should_suspend() is False
        now[0] = 5.0
        assert pause.should_suspend() is True

        _feed(client, _text_delta("Hi"))
        assert pause.status == SessionStatus.GENERATING
        assert pause.should_suspend() is False

        _feed(client, _status("idle"))
        assert pause.should_suspend() is True
