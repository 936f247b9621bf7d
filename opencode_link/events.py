"""Event protocol for the OpenCode server event stream.

The server publishes every bus event on ``GET /global/event`` as
Server-Sent Events. Each frame is a single line::

    data: {"directory": "...", "payload": {"type": "...", "properties": {...}}}

This module turns those lines into typed, immutable ``StreamEvent``
objects. Decoding never raises to the stream reader: lines that are not
``data:`` frames are skipped, and malformed frames are logged and dropped.

Accessors on ``StreamEvent`` are defensive. Each one returns ``None`` when
the nested field it looks for is missing or has an unexpected shape, so
new server-side fields or shapes do not break the client.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from opencode_link.errors import ProtocolError, ServerError

logger = logging.getLogger(__name__)


DATA_PREFIX = "data: "


# =============================================================================
# Event Types
# =============================================================================

class EventType(str, Enum):
    """Event kinds the client reacts to.

    Anything else the server sends decodes to ``OTHER``; the raw type
    string stays available on ``StreamEvent.type``.
    """

    SESSION_STATUS = "session.status"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_CREATED = "message.created"
    SESSION_ERROR = "session.error"
    SERVER_CONNECTED = "server.connected"
    SERVER_HEARTBEAT = "server.heartbeat"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: str) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class PartType(str, Enum):
    """Kinds of message parts carried by ``message.part.updated``."""

    TEXT = "text"
    TOOL = "tool"
    STEP_START = "step-start"
    FILE = "file"
    REASONING = "reasoning"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: str) -> "PartType":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


# =============================================================================
# Stream Event
# =============================================================================

def _get_str(obj: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    """Return obj[key] if it is a string, else None."""
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, str) else None


def _get_dict(obj: Optional[Dict[str, Any]], key: str) -> Optional[Dict[str, Any]]:
    """Return obj[key] if it is a JSON object, else None."""
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, dict) else None


@dataclass(frozen=True)
class StreamEvent:
    """A single decoded event from the server stream.

    Events are transient: the client reacts to them and drops them.

    Attributes:
        type: Raw event type string as sent by the server.
        kind: Typed event kind (``EventType.OTHER`` for unknown types).
        properties: The payload's ``properties`` object, or None.
        directory: Directory scope the server attached to the event.
    """
    type: str
    kind: EventType
    properties: Optional[Dict[str, Any]] = None
    directory: str = ""

    # -- session.status ------------------------------------------------------

    @property
    def status_type(self) -> Optional[str]:
        """Nested ``status.type`` of a session.status event ("idle", "busy")."""
        return _get_str(_get_dict(self.properties, "status"), "type")

    # -- deltas ----------------------------------------------------------------

    @property
    def has_delta(self) -> bool:
        """True if the event carries a non-null ``delta``."""
        return self.delta is not None

    @property
    def delta(self) -> Optional[str]:
        """Incremental text fragment, if any."""
        return _get_str(self.properties, "delta")

    # -- message parts -----------------------------------------------------------

    @property
    def part(self) -> Optional[Dict[str, Any]]:
        return _get_dict(self.properties, "part")

    @property
    def part_type(self) -> Optional[str]:
        """Raw part type string (text, tool, reasoning, file, step-start...)."""
        return _get_str(self.part, "type")

    @property
    def part_kind(self) -> Optional[PartType]:
        """Typed part kind, or None when the event has no typed part."""
        part_type = self.part_type
        if part_type is None:
            return None
        return PartType.from_wire(part_type)

    @property
    def tool_name(self) -> Optional[str]:
        return _get_str(self.part, "tool")

    @property
    def tool_state(self) -> Optional[str]:
        """Tool state (pending, running, completed, error)."""
        return _get_str(_get_dict(self.part, "state"), "status")

    @property
    def file_path(self) -> Optional[str]:
        return _get_str(self.part, "file") or _get_str(self.part, "filename")

    @property
    def file_name(self) -> Optional[str]:
        """Last segment of ``file_path``."""
        path = self.file_path
        if path is None:
            return None
        return path.rsplit("/", 1)[-1]

    @property
    def text_content(self) -> Optional[str]:
        """Full accumulated text of a text part."""
        return _get_str(self.part, "text")

    @property
    def step_title(self) -> Optional[str]:
        return _get_str(self.part, "title")

    # -- session.error -----------------------------------------------------------

    @property
    def error_message(self) -> Optional[str]:
        """Human-readable error from a session.error event.

        The server sends either a plain string or an object shaped like
        ``{"name": ..., "data": {"message": ...}}``.
        """
        if not isinstance(self.properties, dict):
            return None
        error = self.properties.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            return (
                _get_str(error, "message")
                or _get_str(_get_dict(error, "data"), "message")
                or _get_str(error, "name")
            )
        return None

    def to_server_error(self) -> ServerError:
        """Describe a session.error event as a ServerError."""
        return ServerError(
            self.error_message or "Session error occurred",
            session_id=_get_str(self.properties, "sessionID"),
        )

    def __str__(self) -> str:
        return f"StreamEvent[type={self.type}]"


# =============================================================================
# Decoding
# =============================================================================

def parse_event(data: str) -> StreamEvent:
    """Parse the JSON body of a ``data:`` frame.

    Args:
        data: JSON text following the ``data: `` prefix.

    Returns:
        The decoded event.

    Raises:
        ProtocolError: If the JSON is invalid or is not an event envelope.
    """
    try:
        envelope = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise ProtocolError(f"Expected JSON object, got {type(envelope).__name__}")

    directory = envelope.get("directory")
    if not isinstance(directory, str):
        directory = ""

    event_type = "unknown"
    properties = None
    payload = envelope.get("payload")
    if isinstance(payload, dict):
        raw_type = payload.get("type", "unknown")
        if not isinstance(raw_type, str):
            raise ProtocolError(f"Event type must be a string, got {raw_type!r}")
        event_type = raw_type
        properties = _get_dict(payload, "properties")

    return StreamEvent(
        type=event_type,
        kind=EventType.from_wire(event_type),
        properties=properties,
        directory=directory,
    )


def decode_line(line: Optional[str]) -> Optional[StreamEvent]:
    """Decode one line of the event stream.

    Lines that are not ``data:`` frames (blank keep-alive lines, comments,
    ``event:``/``id:`` fields) yield None. Malformed frames are logged as
    warnings and also yield None, so one bad frame never stops the stream.

    Args:
        line: A single line from the stream, without the trailing newline.

    Returns:
        The decoded event, or None.
    """
    if not line or not line.startswith(DATA_PREFIX):
        return None

    data = line[len(DATA_PREFIX):]
    try:
        event = parse_event(data)
    except ProtocolError as e:
        logger.warning(f"Failed to parse SSE data: {e} - raw: {data}")
        return None

    if event.kind != EventType.SERVER_HEARTBEAT:
        logger.debug(
            f"SSE event received: type={event.type}, "
            f"hasProps={event.properties is not None}"
        )
    return event


# =============================================================================
# Request Bodies
# =============================================================================

def build_prompt_body(text: str) -> Dict[str, List[Dict[str, str]]]:
    """Build the JSON body for ``POST /session/{id}/message``."""
    return {"parts": [{"type": "text", "text": text}]}


__all__ = [
    "DATA_PREFIX",
    "EventType",
    "PartType",
    "StreamEvent",
    "build_prompt_body",
    "decode_line",
    "parse_event",
]
