"""Pause policy: decides when the host should suspend its own simulation.

Suspend logic:
- Never while the policy is disabled.
- Never during the grace period right after the host becomes ready, so
  the host does not flicker while it is still loading.
- Always while the user is composing a prompt.
- Otherwise when the session is IDLE or DISCONNECTED, i.e. the agent is
  waiting for the user; resume while it is BUSY or GENERATING.
"""

import logging
import time
from typing import Callable, Optional

from opencode_link.client.host import HostAdapter
from opencode_link.client.models import SessionStatus

logger = logging.getLogger(__name__)

# Seconds after the host becomes ready before suspension may start
GRACE_PERIOD = 3.0

_STATUS_TEXT = {
    SessionStatus.DISCONNECTED: "Disconnected",
    SessionStatus.IDLE: "Idle (Paused)",
    SessionStatus.BUSY: "Processing...",
    SessionStatus.GENERATING: "Generating...",
    SessionStatus.RETRY: "Retrying...",
}


class PauseController:
    """Derives the host suspend signal from session status and local input."""

    def __init__(
        self,
        host: HostAdapter,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
        grace_period: float = GRACE_PERIOD,
    ):
        self._host = host
        self._clock = clock
        self._enabled = enabled
        self._grace_period = grace_period

        self._status = SessionStatus.DISCONNECTED
        self._user_typing = False
        self._ready_since: Optional[float] = None

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def set_status(self, status: SessionStatus) -> None:
        if self._status != status:
            logger.debug(f"Pause controller status: {self._status.value} -> {status.value}")
            self._status = status

    def on_delta_received(self) -> None:
        """Output is flowing; treat the agent as generating."""
        self.set_status(SessionStatus.GENERATING)

    def set_user_typing(self, typing: bool) -> None:
        self._user_typing = typing

    def is_user_typing(self) -> bool:
        return self._user_typing

    def should_suspend(self) -> bool:
        """Return True if the host should suspend right now.

        Polled by the host, typically once per tick.
        """
        if not self._enabled:
            return False

        if not self._host.is_host_ready():
            return False

        now = self._clock()
        if self._ready_since is None:
            self._ready_since = now
            logger.info(f"Host ready, pause will activate in {self._grace_period:.0f}s")

        if now - self._ready_since < self._grace_period:
            return False

        if self._user_typing:
            return True

        return self._status.should_pause

    def on_host_unload(self) -> None:
        """Reset readiness so the grace period applies on the next entry."""
        self._ready_since = None

    def status_text(self) -> str:
        if not self._enabled:
            return "Disabled"
        if self._user_typing:
            return "Typing (Paused)"
        return _STATUS_TEXT[self._status]


__all__ = [
    "GRACE_PERIOD",
    "PauseController",
]
