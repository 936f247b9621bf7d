"""Top-level OpenCode client.

Wires the HTTP transport, event decoder, session manager and pause
controller together, and is the single object a host holds on to.

Startup:
    start() schedules a health check after ``startup_delay`` seconds. On
    success the client marks itself connected, opens the event stream and
    tries to resume the last used session. On failure it retries every
    ``reconnect_interval_ms`` while auto-reconnect is enabled; otherwise it
    stays DISCONNECTED until connect_now() is called.

Serialization:
    Decoded stream events and the state mutations of lifecycle calls are
    pushed onto one queue and applied by a single dispatcher task, in
    order. Session and status state are never written from anywhere else
    while the client is running.

Usage:
    config = ConfigManager()
    config.load()

    async with OpenCodeClient(config) as client:
        client.set_content_listener(lambda text: print(text, end=""))
        await client.create_session()
        await client.send_prompt("Explain this repository")
"""

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from opencode_link.client.config import ClientConfig, ConfigManager
from opencode_link.client.host import DirectHostAdapter, HostAdapter
from opencode_link.client.http import OpenCodeHttpClient, PromptAck
from opencode_link.client.models import SessionInfo, SessionStatus
from opencode_link.client.observers import NoticeKind, NullObserver, PresentationObserver
from opencode_link.client.pause import PauseController
from opencode_link.client.session import SessionManager
from opencode_link.errors import NoActiveSessionError, OpenCodeError, StateError
from opencode_link.events import EventType, PartType, StreamEvent, decode_line

logger = logging.getLogger(__name__)

# Delay before the first health check
STARTUP_DELAY = 1.0

ContentListener = Callable[[str], None]
CompleteListener = Callable[[], None]

_QueueItem = Tuple[Callable[[], Any], Optional[asyncio.Future]]


class OpenCodeClient:
    """Coordinates the connection, session state and event routing."""

    def __init__(
        self,
        config_manager: ConfigManager,
        transport: Optional[OpenCodeHttpClient] = None,
        host: Optional[HostAdapter] = None,
        pause: Optional[PauseController] = None,
        observer: Optional[PresentationObserver] = None,
        *,
        startup_delay: float = STARTUP_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the client. Nothing runs until start().

        Args:
            config_manager: Shared configuration store.
            transport: HTTP transport. Built from the config when None.
            host: Host adapter. Defaults to DirectHostAdapter.
            pause: Pause controller. Built for ``host`` when None.
            observer: Presentation observer. Defaults to NullObserver.
            startup_delay: Seconds before the first health check.
            sleep: Coroutine used for startup and reconnect waits.
        """
        self._config_manager = config_manager
        config = config_manager.config

        self._transport = transport or OpenCodeHttpClient(
            config.server_url,
            config.working_directory,
        )
        self._host = host or DirectHostAdapter()
        self._pause = pause or PauseController(self._host, enabled=config.pause_enabled)
        self._observer: PresentationObserver = observer or NullObserver()
        self._startup_delay = startup_delay
        self._sleep = sleep

        self._sessions = SessionManager(self._transport, config_manager, serializer=self._submit)
        self._sessions.add_status_listener(self._on_status_change)

        self._content_listener: Optional[ContentListener] = None
        self._response_complete_listener: Optional[CompleteListener] = None

        self._queue: "asyncio.Queue[_QueueItem]" = asyncio.Queue()
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None

        self._started = False
        self._closed = False
        self._initialized = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config_manager.config

    @property
    def transport(self) -> OpenCodeHttpClient:
        return self._transport

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def pause(self) -> PauseController:
        return self._pause

    @property
    def host(self) -> HostAdapter:
        return self._host

    @property
    def is_ready(self) -> bool:
        """True once startup completed and the last health check succeeded."""
        return self._initialized and self._transport.is_connected

    @property
    def status(self) -> SessionStatus:
        return self._sessions.status

    @property
    def current_session(self) -> Optional[SessionInfo]:
        return self._sessions.current_session

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the dispatcher and schedule the first health check.

        Must be called from within a running event loop. Calling it again
        is a no-op.
        """
        if self._started or self._closed:
            return
        self._started = True
        self._dispatcher_task = asyncio.create_task(self._dispatch_loop())
        self._connect_task = asyncio.create_task(self._connect_loop(self._startup_delay))

    async def connect_now(self) -> bool:
        """Run one connection attempt right away.

        Used by hosts to reconnect explicitly, e.g. when auto-reconnect is
        disabled. A pending reconnect wait is cancelled first. If the attempt
        fails and auto-reconnect is enabled, the retry loop is rescheduled.

        Returns:
            True if the client is connected afterwards.

        Raises:
            StateError: If the client has been shut down.
        """
        if self._closed:
            raise StateError("Client is shut down")
        if self.is_ready:
            return True

        await self._cancel_connect_loop()
        if await self._try_connect():
            return True

        if self.config.auto_reconnect and not self._closed:
            self._connect_task = asyncio.create_task(
                self._connect_loop(self.config.reconnect_interval)
            )
        return False

    async def shutdown(self) -> None:
        """Stop all background work and release the transport.

        Idempotent. Status ends as DISCONNECTED.
        """
        if self._closed:
            return
        self._closed = True
        self._initialized = False

        await self._cancel_connect_loop()
        await self._transport.shutdown()

        if self._dispatcher_task and not self._dispatcher_task.done():
            self._dispatcher_task.cancel()
            try:
                await self._dispatcher_task
            except asyncio.CancelledError:
                pass
        self._dispatcher_task = None
        self._abandon_queue()

        self._sessions.on_disconnected()
        logger.info("OpenCode client shut down")

    async def __aenter__(self) -> "OpenCodeClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _cancel_connect_loop(self) -> None:
        task = self._connect_task
        self._connect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _connect_loop(self, initial_delay: float) -> None:
        """Health-check until connected, honouring auto_reconnect."""
        delay = initial_delay
        while not self._closed:
            if delay > 0:
                await self._sleep(delay)
            if self._closed:
                return

            if await self._try_connect():
                return

            if not self.config.auto_reconnect:
                logger.info("Auto-reconnect disabled, staying disconnected")
                return
            delay = self.config.reconnect_interval

    async def _try_connect(self) -> bool:
        """One health check plus the post-connect setup."""
        try:
            healthy = await self._transport.check_health()
        except Exception as e:
            logger.debug(f"Connection failed: {e}")
            return False

        # shutdown() may have run while the health check was in flight
        if not healthy or self._closed:
            return False

        logger.info("Connected to OpenCode server")
        try:
            await self._submit(self._sessions.on_connected)
        except StateError:
            return False
        if self._closed:
            return False
        self._transport.open_event_stream(self._on_stream_line)
        self._initialized = True

        last_session_id = self.config.last_session_id
        if last_session_id and not self._closed:
            try:
                await self._sessions.use_session(last_session_id)
            except OpenCodeError as e:
                logger.debug(f"Could not resume session {last_session_id}: {e}")

        return True

    # =========================================================================
    # Serialized dispatch
    # =========================================================================

    @property
    def _dispatching(self) -> bool:
        return (
            not self._closed
            and self._dispatcher_task is not None
            and not self._dispatcher_task.done()
        )

    async def _submit(self, mutation: Callable[[], Any]) -> Any:
        """Run ``mutation`` on the dispatcher and return its result.

        Runs inline when the dispatcher is not running yet.

        Raises:
            StateError: If the client has been shut down.
        """
        if self._closed:
            raise StateError("Client is shut down")
        if not self._dispatching:
            return mutation()

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((mutation, future))
        return await future

    async def _dispatch_loop(self) -> None:
        while True:
            mutation, future = await self._queue.get()
            try:
                result = mutation()
            except Exception as e:
                if future is None:
                    logger.exception("Error handling stream event")
                elif not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    def _abandon_queue(self) -> None:
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._queue.task_done()
            if future is not None and not future.done():
                future.set_exception(StateError("Client is shut down"))

    async def flush(self) -> None:
        """Wait until every queued event and mutation has been applied."""
        if self._dispatching:
            await self._queue.join()

    # =========================================================================
    # Event routing
    # =========================================================================

    def _on_stream_line(self, line: str) -> None:
        """Transport callback: decode and enqueue one stream line."""
        event = decode_line(line)
        if event is None:
            return
        if self._dispatching:
            self._queue.put_nowait((partial(self.handle_event, event), None))
        elif not self._closed:
            self.handle_event(event)

    def handle_event(self, event: StreamEvent) -> None:
        """Route one decoded event to state transitions and observers.

        Called on the dispatcher; exposed for hosts that feed events from
        another source.
        """
        kind = event.kind

        if kind == EventType.SESSION_STATUS:
            self._handle_session_status(event)
        elif kind == EventType.MESSAGE_PART_UPDATED:
            self._handle_part_updated(event)
        elif kind == EventType.SESSION_ERROR:
            error = event.to_server_error()
            logger.warning(f"Session error: {error}")
            self._notify(self._observer.on_error_notice, str(error))
        elif kind == EventType.SERVER_CONNECTED:
            self._notify(self._observer.on_discrete_notice, NoticeKind.SYSTEM, "Connected to OpenCode")
        elif kind in (EventType.SERVER_HEARTBEAT, EventType.MESSAGE_CREATED):
            pass
        else:
            logger.debug(f"Ignoring event type {event.type}")

    def _handle_session_status(self, event: StreamEvent) -> None:
        status_type = event.status_type
        if status_type == "idle":
            self._sessions.on_session_idle()
            self._notify(self._observer.on_discrete_notice, NoticeKind.SYSTEM, "Ready for input")
            if self._response_complete_listener is not None:
                self._notify(self._response_complete_listener)
        elif status_type == "busy":
            self._sessions.on_session_busy()
            self._notify(self._observer.on_discrete_notice, NoticeKind.SYSTEM, "Processing...")
        else:
            logger.debug(f"Ignoring session status {status_type!r}")

    def _handle_part_updated(self, event: StreamEvent) -> None:
        part_kind = event.part_kind
        if part_kind is None:
            return

        if event.has_delta:
            self._sessions.on_delta_received()
            self._pause.on_delta_received()
            delta = event.delta
            # Reasoning is activity only; its text is not shown
            if part_kind == PartType.TEXT and delta and self._content_listener is not None:
                self._notify(self._content_listener, delta)

        if part_kind == PartType.TOOL:
            tool_name, tool_state = event.tool_name, event.tool_state
            if tool_name and tool_state:
                self._notify(self._observer.on_discrete_notice, NoticeKind.TOOL, f"{tool_name}: {tool_state}")
        elif part_kind == PartType.STEP_START:
            title = event.step_title
            if title:
                self._notify(self._observer.on_discrete_notice, NoticeKind.STEP, f"Step: {title}")
        elif part_kind == PartType.FILE:
            file_name = event.file_name
            if file_name:
                self._notify(self._observer.on_discrete_notice, NoticeKind.FILE, f"File: {file_name}")

    def _on_status_change(self, status: SessionStatus) -> None:
        self._pause.set_status(status)
        self._notify(self._observer.on_status_change, status)

    def _notify(self, callback: Callable[..., None], *args: Any) -> None:
        """Invoke an observer callback on the host's main context.

        Observer failures are logged and never reach the dispatch path.
        """
        def run() -> None:
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in observer callback")

        try:
            self._host.schedule_on_main(run)
        except Exception:
            logger.exception("Host failed to schedule observer callback")

    # =========================================================================
    # Observer registration
    # =========================================================================

    def set_observer(self, observer: Optional[PresentationObserver]) -> None:
        self._observer = observer or NullObserver()

    def set_content_listener(self, listener: Optional[ContentListener]) -> None:
        """Register the live text delta listener. Last registration wins."""
        self._content_listener = listener

    def set_response_complete_listener(self, listener: Optional[CompleteListener]) -> None:
        """Register the listener called when the session goes idle."""
        self._response_complete_listener = listener

    def clear_content_listeners(self) -> None:
        self._content_listener = None
        self._response_complete_listener = None

    # =========================================================================
    # Session API
    # =========================================================================

    async def create_session(self) -> SessionInfo:
        return await self._sessions.create_session()

    async def list_sessions(self) -> List[SessionInfo]:
        return await self._sessions.list_sessions()

    async def use_session(self, session_id: str) -> SessionInfo:
        return await self._sessions.use_session(session_id)

    async def send_prompt(self, text: str) -> PromptAck:
        """Send a prompt to the current session.

        The response arrives through the content listener. If the server does
        not accept the prompt, the observer gets an error notice and the
        status returns to IDLE.

        Raises:
            NoActiveSessionError: If no session is current. Nothing changes.
        """
        if self._sessions.current_session is None:
            raise NoActiveSessionError()

        self._pause.set_user_typing(False)
        self._notify(self._observer.on_user_message, text)

        ack = await self._sessions.send_prompt(text)
        if ack.is_error:
            self._notify(self._observer.on_error_notice, ack.message)
            await self._submit(partial(self._sessions.set_status, SessionStatus.IDLE))
        return ack

    async def cancel(self) -> None:
        await self._sessions.cancel()

    async def get_session_messages(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch message history, for the current session by default."""
        if session_id is None:
            session = self._sessions.current_session
            if session is None:
                raise NoActiveSessionError()
            session_id = session.id
        return await self._transport.get_session_messages(session_id)


__all__ = [
    "OpenCodeClient",
    "STARTUP_DELAY",
]
