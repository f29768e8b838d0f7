"""Fake upstream transport for tests.

Connections are in-memory: tests push JSON messages into them, drop them with
any close code, and inspect the frames the session sent.
"""

import asyncio
import json
from typing import Any

from caption_relay.constants import ABNORMAL_CLOSURE, NORMAL_CLOSURE
from caption_relay.upstream.protocol import ConnectionClosed


class FakeConnection:
    """In-memory socket that behaves like an open websocket."""

    def __init__(self, url: str):
        self.url = url
        self.sent: list[bytes] = []
        self.open = True
        self.close_code: int | None = None
        self._inbox: asyncio.Queue[str | bytes | ConnectionClosed] = asyncio.Queue()

    def push(self, message: dict[str, Any] | str | bytes) -> None:
        """Deliver a message to the session as if the API sent it."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def push_transcript(self, text: str, is_final: bool = True) -> None:
        self.push({"type": "transcript", "data": {"utterance": {"text": text}, "is_final": is_final}})

    def push_translation(self, text: str) -> None:
        self.push({"type": "translation", "data": {"translated_utterance": {"text": text}}})

    def drop(self, code: int = ABNORMAL_CLOSURE) -> None:
        """Close from the remote side with ``code``."""
        self.open = False
        self.close_code = code
        self._inbox.put_nowait(ConnectionClosed(code))

    async def send(self, frame: bytes) -> None:
        if not self.open:
            raise ConnectionClosed(self.close_code or ABNORMAL_CLOSURE)
        self.sent.append(bytes(frame))

    async def recv(self) -> str | bytes:
        item = await self._inbox.get()
        if isinstance(item, ConnectionClosed):
            # Stay closed for any later reads
            self._inbox.put_nowait(item)
            raise item
        return item

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        if not self.open:
            return
        self.open = False
        self.close_code = code
        self._inbox.put_nowait(ConnectionClosed(code))


class FakeTransport:
    """Hands out FakeConnections and remembers every one it opened."""

    def __init__(self, fail_with: Exception | None = None):
        self.connections: list[FakeConnection] = []
        self.fail_with = fail_with

    async def connect(self, url: str) -> FakeConnection:
        if self.fail_with is not None:
            raise self.fail_with
        connection = FakeConnection(url)
        self.connections.append(connection)
        return connection

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if c.open]

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeNegotiator:
    """Returns numbered session URLs, or raises a configured error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def __call__(self, config) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return f"wss://fake.upstream/session/{self.calls}"
