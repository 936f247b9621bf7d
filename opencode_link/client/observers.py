"""Presentation observer interface.

A presentation surface (chat log, overlay, GUI screen) subscribes to the
client by implementing any subset of these callbacks. The client only
relies on the callbacks, never on the concrete type.
"""

from enum import Enum

from opencode_link.client.models import SessionStatus


class NoticeKind(str, Enum):
    """Kinds of discrete, non-incremental status lines."""
    SYSTEM = "system"
    TOOL = "tool"
    STEP = "step"
    FILE = "file"


class PresentationObserver:
    """Base observer with no-op callbacks.

    Subclass and override the callbacks a surface cares about.
    """

    def on_status_change(self, status: SessionStatus) -> None:
        pass

    def on_user_message(self, text: str) -> None:
        pass

    def on_discrete_notice(self, kind: NoticeKind, text: str) -> None:
        pass

    def on_error_notice(self, text: str) -> None:
        pass


class NullObserver(PresentationObserver):
    """Observer used when no presentation surface is attached."""
    pass


__all__ = [
    "NoticeKind",
    "NullObserver",
    "PresentationObserver",
]
