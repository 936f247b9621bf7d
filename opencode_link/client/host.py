"""Host adapter interface.

The client core never talks to the host application directly. A host
(game client, editor, test harness) provides two capabilities:

- ``schedule_on_main(fn)``: run ``fn`` on the host's main context, e.g. a
  render thread that owns the UI.
- ``is_host_ready()``: whether the host is in a state where suspending it
  makes sense (e.g. a world is loaded and the player has spawned).

Loader-specific wiring lives in a thin adapter outside this package.
"""

from typing import Callable, Protocol, runtime_checkable


@runtime_checkable
class HostAdapter(Protocol):
    """Capabilities the client needs from its host."""

    def schedule_on_main(self, fn: Callable[[], None]) -> None:
        ...

    def is_host_ready(self) -> bool:
        ...


class DirectHostAdapter:
    """Adapter for hosts without a separate main context.

    Runs scheduled functions immediately on the calling context. Readiness is
    a plain flag the host flips.
    """

    def __init__(self, ready: bool = True):
        self._ready = ready

    def schedule_on_main(self, fn: Callable[[], None]) -> None:
        fn()

    def is_host_ready(self) -> bool:
        return self._ready

    def set_ready(self, ready: bool) -> None:
        self._ready = ready


__all__ = [
    "DirectHostAdapter",
    "HostAdapter",
]
