"""Session data model shared by the transport and the session manager."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from opencode_link.errors import ProtocolError


class SessionStatus(str, Enum):
    """Status of the current OpenCode session.

    Exactly one value is current at a time. Values are ordered by recency of
    the last observed event, not by severity.

    States:
        DISCONNECTED: Not connected to the server.
        IDLE: Connected, the agent is waiting for input.
        BUSY: Processing a request but not producing tokens yet.
        GENERATING: Receiving deltas from the model.
        RETRY: Reserved; only set explicitly by the host.
    """
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    BUSY = "busy"
    GENERATING = "generating"
    RETRY = "retry"

    @property
    def should_pause(self) -> bool:
        """True when the host should suspend its own simulation."""
        return self in (SessionStatus.DISCONNECTED, SessionStatus.IDLE)

    @property
    def is_active(self) -> bool:
        """True while the agent is working."""
        return self in (SessionStatus.BUSY, SessionStatus.GENERATING)


@dataclass(frozen=True)
class SessionInfo:
    """A server-side session.

    Sessions are replaced, never mutated, when the client switches.

    Attributes:
        id: Server-assigned session identifier.
        title: Display title.
        directory: Directory scope of the session.
        created_at: Server creation timestamp (ms).
        updated_at: Server last-update timestamp (ms).
    """
    id: str
    title: str = "Untitled"
    directory: str = ""
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        """Build a SessionInfo from the server's JSON.

        Raises:
            ProtocolError: If ``data`` is not an object or has no string id.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected session object, got {type(data).__name__}")
        session_id = data.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ProtocolError("Session object has no id")

        title = data.get("title")
        directory = data.get("directory")
        time = data.get("time") if isinstance(data.get("time"), dict) else {}

        return cls(
            id=session_id,
            title=title if isinstance(title, str) else "Untitled",
            directory=directory if isinstance(directory, str) else "",
            created_at=_as_int(time.get("created")),
            updated_at=_as_int(time.get("updated")),
        )

    def __str__(self) -> str:
        return f"Session[{self.id}: {self.title}]"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


__all__ = [
    "SessionInfo",
    "SessionStatus",
]
