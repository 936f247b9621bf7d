"""Session lifecycle and status state machine.

Owns the current session and the current ``SessionStatus``. Status moves
only through explicit lifecycle calls (create, use, send, cancel) and the
``on_*`` hooks the client calls for decoded stream events:

    DISCONNECTED --on_connected--> IDLE
    IDLE/BUSY/GENERATING --on_session_idle--> IDLE
    IDLE --send_prompt--> BUSY
    BUSY/IDLE --on_delta_received--> GENERATING
    GENERATING --on_session_busy--> GENERATING (no downgrade)
    any --cancel--> IDLE

Listeners are called synchronously on every change. A failing listener is
logged and never stops the others.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from opencode_link.client.config import ConfigManager
from opencode_link.client.http import OpenCodeHttpClient, PromptAck
from opencode_link.client.models import SessionInfo, SessionStatus
from opencode_link.errors import NoActiveSessionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StatusListener = Callable[[SessionStatus], None]

# Runs a state mutation on the caller's serialized context
Serializer = Callable[[Callable[[], Any]], Awaitable[Any]]


class SessionManager:
    """Tracks the current session and its status."""

    def __init__(
        self,
        transport: OpenCodeHttpClient,
        config: Optional[ConfigManager] = None,
        serializer: Optional[Serializer] = None,
    ):
        """Initialize the manager.

        Args:
            transport: HTTP transport for session requests.
            config: Config store used to persist the last used session id.
            serializer: Coroutine function that runs a zero-argument callable
                on a single serialized context. When None, mutations run
                inline.
        """
        self._transport = transport
        self._config = config
        self._serializer = serializer

        self._current_session: Optional[SessionInfo] = None
        self._status = SessionStatus.DISCONNECTED
        self._listeners: List[StatusListener] = []

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def current_session(self) -> Optional[SessionInfo]:
        return self._current_session

    @property
    def status(self) -> SessionStatus:
        return self._status

    def set_serializer(self, serializer: Optional[Serializer]) -> None:
        self._serializer = serializer

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _apply(self, mutation: Callable[[], T]) -> T:
        if self._serializer is None:
            return mutation()
        return await self._serializer(mutation)

    def _adopt(self, session: SessionInfo) -> None:
        self._current_session = session
        self._set_status(SessionStatus.IDLE)

    def _remember(self, session: SessionInfo) -> None:
        if self._config is None:
            return
        try:
            self._config.set_last_session_id(session.id)
        except Exception:
            logger.exception(f"Failed to persist last session id {session.id}")

    async def create_session(self) -> SessionInfo:
        """Create a session on the server and make it current.

        Raises:
            RequestError: If the server request fails.
            ProtocolError: If the server response is malformed.
        """
        session = await self._transport.create_session()
        await self._apply(lambda: self._adopt(session))
        logger.info(f"Created session: {session.id}")
        self._remember(session)
        return session

    async def list_sessions(self) -> List[SessionInfo]:
        return await self._transport.list_sessions()

    async def use_session(self, session_id: str) -> SessionInfo:
        """Switch to an existing session.

        Raises:
            RequestError: If the session cannot be fetched.
            ProtocolError: If the server response is malformed.
        """
        session = await self._transport.get_session(session_id)
        await self._apply(lambda: self._adopt(session))
        logger.info(f"Switched to session: {session.id}")
        self._remember(session)
        return session

    async def send_prompt(self, text: str) -> PromptAck:
        """Send a prompt to the current session.

        Status becomes BUSY right away; later transitions come from the
        event stream, not from the HTTP acknowledgment.

        Raises:
            NoActiveSessionError: If there is no current session. Status is
                left untouched.
        """
        session = self._current_session
        if session is None:
            raise NoActiveSessionError()

        await self._apply(lambda: self._set_status(SessionStatus.BUSY))
        return await self._transport.send_prompt(session.id, text)

    async def cancel(self) -> None:
        """Abort the current generation and force IDLE.

        Does nothing when there is no current session.
        """
        session = self._current_session
        if session is None:
            return

        await self._transport.abort_session(session.id)
        await self._apply(lambda: self._set_status(SessionStatus.IDLE))

    # =========================================================================
    # Event-driven transitions
    # =========================================================================

    def on_delta_received(self) -> None:
        if self._status != SessionStatus.GENERATING:
            self._set_status(SessionStatus.GENERATING)

    def on_session_idle(self) -> None:
        self._set_status(SessionStatus.IDLE)

    def on_session_busy(self) -> None:
        # Busy while generating is not a regression
        if self._status != SessionStatus.GENERATING:
            self._set_status(SessionStatus.BUSY)

    def on_connected(self) -> None:
        if self._status == SessionStatus.DISCONNECTED:
            self._set_status(SessionStatus.IDLE)

    def on_disconnected(self) -> None:
        self._set_status(SessionStatus.DISCONNECTED)

    def set_status(self, status: SessionStatus) -> None:
        """Set the status directly. The only way to reach RETRY."""
        self._set_status(status)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _set_status(self, new_status: SessionStatus) -> None:
        if self._status == new_status:
            return

        old_status = self._status
        self._status = new_status
        logger.debug(f"Session status changed: {old_status.value} -> {new_status.value}")

        for listener in list(self._listeners):
            try:
                listener(new_status)
            except Exception:
                logger.exception("Error in status listener")


__all__ = [
    "SessionManager",
    "StatusListener",
]
