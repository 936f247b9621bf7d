"""Error taxonomy for the OpenCode link client.

Errors are grouped by how callers are expected to react:

    TransportError: Network or timeout failure. Always recoverable; the
        event stream retries on its own, one-shot requests surface it
        as a failed call.
    ProtocolError: A payload did not have the expected shape. Stream
        events carrying one are dropped and decoding continues.
    StateError: The call is not valid in the current client state
        (e.g. prompting without a session). Never retried.
    ServerError: The server reported a failure inside a session.
"""

from typing import Optional


class OpenCodeError(Exception):
    """Base class for all errors raised by opencode_link."""
    pass


class TransportError(OpenCodeError):
    """Network-level failure talking to the OpenCode server."""
    pass


class RequestError(TransportError):
    """A REST request failed with a non-success status or transport error.

    Attributes:
        status_code: HTTP status code, if a response was received.
        cause: Description of the underlying failure when no response
            was received.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.cause = cause


class ProtocolError(OpenCodeError):
    """Malformed or unexpected payload from the server."""
    pass


class StateError(OpenCodeError):
    """Operation attempted in a client state that does not allow it."""
    pass


class NoActiveSessionError(StateError):
    """Raised when a session is required but none is current."""

    def __init__(self, message: str = "No active session"):
        super().__init__(message)


class ServerError(OpenCodeError):
    """Failure reported by the server for a session.

    Built from ``session.error`` events and shown to the user; never
    raised by the client itself.

    Attributes:
        session_id: Session the error belongs to, if the event named one.
    """

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


__all__ = [
    "NoActiveSessionError",
    "OpenCodeError",
    "ProtocolError",
    "RequestError",
    "ServerError",
    "StateError",
    "TransportError",
]
