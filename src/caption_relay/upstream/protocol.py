"""Transport protocol for the upstream streaming socket.

This is the boundary between the session state machine and the network.
The real implementation wraps ``websockets``; tests use a fake transport
that emits the same open/message/close shapes.
"""

from typing import Protocol

from caption_relay.constants import ABNORMAL_CLOSURE, NORMAL_CLOSURE


class ConnectionClosed(Exception):
    """The socket closed. ``code`` is the websocket close code."""

    def __init__(self, code: int = ABNORMAL_CLOSURE, reason: str = ""):
        super().__init__(f"connection closed (code: {code})")
        self.code = code
        self.reason = reason

    @property
    def normal(self) -> bool:
        return self.code == NORMAL_CLOSURE


class Connection(Protocol):
    """An open upstream socket."""

    async def send(self, frame: bytes) -> None:
        """Send one binary PCM frame."""
        ...

    async def recv(self) -> str | bytes:
        """Receive the next message.

        Raises:
            ConnectionClosed: The socket closed, normally or not.
        """
        ...

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        """Close the socket. Must be safe to call more than once."""
        ...


class Transport(Protocol):
    """Factory for upstream connections."""

    async def connect(self, url: str) -> Connection:
        """Open a socket to ``url``.

        Raises:
            OSError or ConnectionClosed: The socket could not be opened.
        """
        ...
