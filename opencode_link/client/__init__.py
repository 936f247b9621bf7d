"""OpenCode link client implementations."""

from opencode_link.client.config import ClientConfig, ConfigManager, load_client_config
from opencode_link.client.coordinator import OpenCodeClient
from opencode_link.client.host import DirectHostAdapter, HostAdapter
from opencode_link.client.http import EventStreamHandle, OpenCodeHttpClient, PromptAck
from opencode_link.client.models import SessionInfo, SessionStatus
from opencode_link.client.observers import NoticeKind, NullObserver, PresentationObserver
from opencode_link.client.pause import PauseController
from opencode_link.client.session import SessionManager

__all__ = [
    "ClientConfig",
    "ConfigManager",
    "DirectHostAdapter",
    "EventStreamHandle",
    "HostAdapter",
    "NoticeKind",
    "NullObserver",
    "OpenCodeClient",
    "OpenCodeHttpClient",
    "PauseController",
    "PresentationObserver",
    "PromptAck",
    "SessionInfo",
    "SessionManager",
    "SessionStatus",
    "load_client_config",
]
