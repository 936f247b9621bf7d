"""OpenCode link - connects an interactive host application to an OpenCode server.

Usage:
    from opencode_link.client import OpenCodeClient, ConfigManager
    from opencode_link.events import StreamEvent, decode_line
"""

from opencode_link.client import (
    ClientConfig,
    ConfigManager,
    OpenCodeClient,
    OpenCodeHttpClient,
    PauseController,
    SessionInfo,
    SessionManager,
    SessionStatus,
)
from opencode_link.errors import (
    NoActiveSessionError,
    OpenCodeError,
    ProtocolError,
    RequestError,
    ServerError,
    StateError,
    TransportError,
)
from opencode_link.events import (
    EventType,
    PartType,
    StreamEvent,
    decode_line,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "ClientConfig",
    "ConfigManager",
    "OpenCodeClient",
    "OpenCodeHttpClient",
    "PauseController",
    "SessionInfo",
    "SessionManager",
    "SessionStatus",
    # Errors
    "NoActiveSessionError",
    "OpenCodeError",
    "ProtocolError",
    "RequestError",
    "ServerError",
    "StateError",
    "TransportError",
    # Events
    "EventType",
    "PartType",
    "StreamEvent",
    "decode_line",
]
