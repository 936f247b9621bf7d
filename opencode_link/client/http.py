"""HTTP transport for the OpenCode server.

Wraps an ``httpx.AsyncClient`` and exposes the REST calls the client needs
plus one persistent Server-Sent-Events connection to ``/global/event``.

Usage:
    from opencode_link.client.http import OpenCodeHttpClient

    async with OpenCodeHttpClient("http://localhost:4096") as http:
        if await http.check_health():
            session = await http.create_session()
            http.open_event_stream(print)
            await http.send_prompt(session.id, "Hello")

Failure contract:
    - check_health() never raises; it returns False.
    - create_session(), list_sessions(), get_session() raise RequestError.
    - send_prompt() returns an error-tagged PromptAck instead of raising.
    - abort_session() and get_session_messages() are best-effort and only log.
    - The event stream reconnects on its own every STREAM_RETRY_DELAY seconds
      while it is wanted.
    - open_event_stream() raises StateError once the transport is shut down.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from opencode_link.client.models import SessionInfo
from opencode_link.client.proxy import get_httpx_async_client
from opencode_link.errors import ProtocolError, RequestError, StateError
from opencode_link.events import build_prompt_body
from opencode_link.trace import trace

logger = logging.getLogger(__name__)

# Delay before reopening a dropped event stream
STREAM_RETRY_DELAY = 5.0

CONNECT_TIMEOUT = 10.0
HEALTH_TIMEOUT = 5.0
REQUEST_TIMEOUT = 10.0
# The server may hold the prompt request open while the agent works
PROMPT_TIMEOUT = 600.0

LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class PromptAck:
    """Result of submitting a prompt.

    The generated content never comes back here; it arrives on the event
    stream.

    Attributes:
        ok: Whether the server accepted the prompt.
        message: "Message sent" on success, "Error: ..." on failure.
    """
    ok: bool
    message: str

    @property
    def is_error(self) -> bool:
        return not self.ok


class EventStreamHandle:
    """Handle to the background event stream reader."""

    def __init__(self, task: "asyncio.Task[None]"):
        self._task = task

    @property
    def task(self) -> "asyncio.Task[None]":
        return self._task

    @property
    def is_running(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class OpenCodeHttpClient:
    """REST and SSE transport for one OpenCode server."""

    def __init__(
        self,
        base_url: str,
        directory: str = "",
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        stream_retry_delay: float = STREAM_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the transport.

        Args:
            base_url: Server base URL, e.g. ``http://localhost:4096``.
            directory: Working directory of the client. Not sent with session
                creation; the server picks its own default directory.
            http_transport: Optional httpx transport (tests pass an
                ``httpx.MockTransport``).
            stream_retry_delay: Seconds to wait before reopening the stream.
            sleep: Coroutine used for the retry wait.
        """
        self._base_url = base_url.rstrip("/")
        self._directory = directory
        self._stream_retry_delay = stream_retry_delay
        self._sleep = sleep

        client_kwargs: Dict[str, Any] = {
            "timeout": httpx.Timeout(REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT),
        }
        if http_transport is not None:
            client_kwargs["transport"] = http_transport
        self._client = get_httpx_async_client(self._base_url, **client_kwargs)

        self._connected = False
        self._closed = False

        self._stream_wanted = False
        self._stream_task: Optional[asyncio.Task] = None
        self._on_line: Optional[LineCallback] = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def directory(self) -> str:
        return self._directory

    @property
    def is_connected(self) -> bool:
        """Result of the most recent health check."""
        return self._connected

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_streaming(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    # =========================================================================
    # REST
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request, turning httpx failures into RequestError."""
        if self._closed:
            raise RequestError(f"{method} {path} failed: transport is shut down", cause="closed")
        try:
            response = await self._client.request(method, path, json=json, timeout=timeout)
        except httpx.HTTPError as e:
            cause = f"{type(e).__name__}: {e}"
            trace("http", f"{method} {path} failed: {cause}", include_traceback=True)
            raise RequestError(f"{method} {path} failed: {cause}", cause=cause) from e

        trace("http", f"{method} {path} -> {response.status_code}")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON in response: {e}") from e

    async def check_health(self) -> bool:
        """Check whether the server is reachable and healthy.

        Never raises. Updates ``is_connected``.

        Returns:
            True if ``GET /global/health`` answered 200.
        """
        try:
            response = await self._request("GET", "/global/health", timeout=HEALTH_TIMEOUT)
            # A result arriving after shutdown() must not revive the transport
            self._connected = response.status_code == 200 and not self._closed
        except RequestError as e:
            self._connected = False
            logger.debug(f"Health check failed for {self._base_url}: {e.cause}")
        return self._connected

    async def create_session(self) -> SessionInfo:
        """Create a new session.

        Raises:
            RequestError: On non-success status or transport failure.
            ProtocolError: If the response is not a session object.
        """
        response = await self._request("POST", "/session", json={})
        if response.status_code not in (200, 201):
            raise RequestError(
                f"Failed to create session: {response.status_code}",
                status_code=response.status_code,
            )
        return SessionInfo.from_dict(self._json(response))

    async def list_sessions(self) -> List[SessionInfo]:
        """List all sessions known to the server.

        Raises:
            RequestError: On non-success status or transport failure.
            ProtocolError: If the response is not a list of sessions.
        """
        response = await self._request("GET", "/session")
        if response.status_code != 200:
            raise RequestError(
                f"Failed to list sessions: {response.status_code}",
                status_code=response.status_code,
            )
        data = self._json(response)
        if not isinstance(data, list):
            raise ProtocolError("Expected a list of sessions")
        return [SessionInfo.from_dict(item) for item in data]

    async def get_session(self, session_id: str) -> SessionInfo:
        """Fetch one session.

        Raises:
            RequestError: On non-success status or transport failure.
            ProtocolError: If the response is not a session object.
        """
        response = await self._request("GET", f"/session/{session_id}")
        if response.status_code != 200:
            raise RequestError(
                f"Failed to get session: {response.status_code}",
                status_code=response.status_code,
            )
        return SessionInfo.from_dict(self._json(response))

    async def send_prompt(self, session_id: str, text: str) -> PromptAck:
        """Submit a prompt to a session.

        Completion is signalled only on the event stream. Failures are
        returned as an error-tagged ack, never raised.
        """
        logger.info(f"Sending message to session {session_id}")
        try:
            response = await self._request(
                "POST",
                f"/session/{session_id}/message",
                json=build_prompt_body(text),
                timeout=PROMPT_TIMEOUT,
            )
        except RequestError as e:
            logger.error(f"Failed to send message: {e}")
            return PromptAck(ok=False, message=f"Error: {e}")

        if response.status_code != 200:
            logger.error(f"Failed to send message: {response.status_code} - {response.text}")
            return PromptAck(
                ok=False,
                message=f"Error: Failed to send message: {response.status_code}",
            )

        logger.info(f"Message sent successfully to session {session_id}")
        return PromptAck(ok=True, message="Message sent")

    async def abort_session(self, session_id: str) -> None:
        """Abort the running operation of a session. Best-effort."""
        try:
            response = await self._request("POST", f"/session/{session_id}/abort")
        except RequestError as e:
            logger.warning(f"Abort request failed: {e}")
            return

        if response.status_code not in (200, 204):
            logger.warning(f"Abort returned status: {response.status_code}")

    async def get_session_messages(self, session_id: str) -> List[Dict[str, Any]]:
        """Fetch the message history of a session.

        Returns:
            The server's message list, or an empty list on any failure.
        """
        try:
            response = await self._request("GET", f"/session/{session_id}/message")
        except RequestError as e:
            logger.warning(f"Failed to get messages: {e}")
            return []

        if response.status_code != 200:
            logger.warning(f"Failed to get messages: {response.status_code}")
            return []

        try:
            data = self._json(response)
        except ProtocolError as e:
            logger.warning(f"Failed to get messages: {e}")
            return []
        if not isinstance(data, list):
            logger.warning("Failed to get messages: expected a list")
            return []
        return data

    # =========================================================================
    # Event Stream
    # =========================================================================

    def open_event_stream(self, on_line: LineCallback) -> EventStreamHandle:
        """Start reading ``/global/event`` in a background task.

        Every received line is passed to ``on_line``. If a reader is already
        running, only the callback is replaced and the existing handle is
        returned.

        Must be called from within a running event loop.

        Raises:
            StateError: If the transport has been shut down.
        """
        if self._closed:
            raise StateError("Cannot open event stream: transport is shut down")

        self._on_line = on_line

        if self.is_streaming:
            logger.debug("SSE already running")
            return EventStreamHandle(self._stream_task)

        self._stream_wanted = True
        self._stream_task = asyncio.create_task(self._run_event_stream())
        return EventStreamHandle(self._stream_task)

    async def close_event_stream(self) -> None:
        """Stop the stream reader without closing the client."""
        self._stream_wanted = False
        task = self._stream_task
        self._stream_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _deliver(self, line: str) -> None:
        trace("sse", line)
        if self._on_line is None:
            return
        try:
            self._on_line(line)
        except Exception:
            logger.exception("Error in event stream line handler")

    async def _run_event_stream(self) -> None:
        """Read the event stream, reopening it after errors while wanted."""
        while self._stream_wanted:
            try:
                async with self._client.stream(
                    "GET",
                    "/global/event",
                    headers={"Accept": "text/event-stream"},
                    timeout=httpx.Timeout(CONNECT_TIMEOUT, read=None),
                ) as response:
                    if response.status_code != 200:
                        raise RequestError(
                            f"Event stream returned {response.status_code}",
                            status_code=response.status_code,
                        )
                    logger.debug("SSE stream connected")
                    async for line in response.aiter_lines():
                        self._deliver(line)
                logger.debug("SSE stream completed")

            except asyncio.CancelledError:
                raise

            except Exception as e:
                if self._stream_wanted:
                    logger.warning(f"SSE connection error: {e}")

            if self._stream_wanted:
                logger.warning(
                    f"SSE connection lost, reconnecting in {self._stream_retry_delay:.0f}s"
                )
                await self._sleep(self._stream_retry_delay)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def shutdown(self) -> None:
        """Stop the stream reader and release the HTTP client.

        Idempotent. No request or stream retry survives shutdown.
        """
        if self._closed:
            return
        self._closed = True
        self._connected = False

        await self.close_event_stream()
        await self._client.aclose()
        logger.debug("HTTP transport shut down")

    async def aclose(self) -> None:
        """Alias of shutdown(), matching the httpx client API."""
        await self.shutdown()

    async def __aenter__(self) -> "OpenCodeHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


__all__ = [
    "EventStreamHandle",
    "OpenCodeHttpClient",
    "PromptAck",
    "STREAM_RETRY_DELAY",
]
