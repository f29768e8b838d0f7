"""Upstream transcription session.

One ``UpstreamSession`` owns one socket for its whole life:

    IDLE -> NEGOTIATING -> CONNECTED -> STREAMING -> CLOSED
                 \\______________\\____________\\____> ERRORED

Socket activity is turned into events on an internal queue (text, closed,
error) which the owner consumes through :meth:`UpstreamSession.events`. The
state machine can therefore be driven by a fake transport in tests.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Union

from caption_relay.config import SessionConfig
from caption_relay.constants import NORMAL_CLOSURE, OUTBOUND_QUEUE_FRAMES
from caption_relay.errors import ConnectionLost, NegotiationError, RelayError
from caption_relay.upstream.gladia import extract_text, parse_message
from caption_relay.upstream.protocol import Connection, ConnectionClosed, Transport

logger = logging.getLogger(__name__)

Negotiator = Callable[[SessionConfig], Awaitable[str]]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ClosedEvent:
    code: int

    @property
    def normal(self) -> bool:
        return self.code == NORMAL_CLOSURE


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException


SessionEvent = Union[TextEvent, ClosedEvent, ErrorEvent]


class UpstreamSession:
    """Negotiates one session and exchanges audio/text over its socket."""

    def __init__(
        self,
        config: SessionConfig,
        negotiator: Negotiator,
        transport: Transport,
        outbound_frames: int = OUTBOUND_QUEUE_FRAMES,
    ):
        self.config = config
        self.url: str | None = None
        self._negotiator = negotiator
        self._transport = transport
        self._state = SessionState.IDLE
        self._connection: Connection | None = None
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue(outbound_frames)
        self._tasks: list[asyncio.Task] = []
        self._finished = False
        self._closing = False
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state in (SessionState.CONNECTED, SessionState.STREAMING)

    def _transition(self, state: SessionState) -> None:
        if state != self._state:
            logger.debug("Upstream session %s -> %s", self._state.value, state.value)
            self._state = state

    async def negotiate(self) -> str:
        """Ask the API for a session URL.

        Raises:
            NegotiationError: The API refused; the session is ERRORED.
        """
        if self._state != SessionState.IDLE:
            raise RelayError(f"cannot negotiate from state {self._state.value}")
        self._transition(SessionState.NEGOTIATING)
        try:
            self.url = await self._negotiator(self.config)
        except NegotiationError:
            self._transition(SessionState.ERRORED)
            raise
        return self.url

    async def connect(self, url: str | None = None) -> None:
        """Open the socket and start the reader and writer tasks.

        Raises:
            ConnectionLost: The socket could not be opened; the session is
                ERRORED.
        """
        if self._state not in (SessionState.IDLE, SessionState.NEGOTIATING):
            raise RelayError(f"cannot connect from state {self._state.value}")
        url = url or self.url
        if not url:
            raise RelayError("no session URL to connect to")
        self.url = url

        try:
            self._connection = await self._transport.connect(url)
        except ConnectionClosed as exc:
            self._transition(SessionState.ERRORED)
            raise ConnectionLost(str(exc), code=exc.code) from exc
        except OSError as exc:
            self._transition(SessionState.ERRORED)
            raise ConnectionLost(f"Connection failed: {exc}") from exc

        self._transition(SessionState.CONNECTED)
        self._tasks = [
            asyncio.create_task(self._read_loop(), name="upstream-reader"),
            asyncio.create_task(self._write_loop(), name="upstream-writer"),
        ]
        logger.info("Upstream socket open")

    def mark_streaming(self) -> None:
        """Record that audio is attached. Only valid while CONNECTED."""
        if self._state == SessionState.CONNECTED:
            self._transition(SessionState.STREAMING)

    def send(self, frame: bytes) -> None:
        """Queue a PCM frame for the socket without blocking.

        Frames are dropped while the socket is not open or when the
        outbound queue is full.
        """
        if not self.is_open:
            self.frames_dropped += 1
            return
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self.frames_dropped += 1

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield socket events; ends after the first closed/error event."""
        while True:
            event = await self._events.get()
            yield event
            if not isinstance(event, TextEvent):
                return

    async def close(self) -> None:
        """Close the socket with a normal closure code. Idempotent."""
        if self._closing:
            return
        self._closing = True

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self._connection is not None:
            try:
                await self._connection.close(NORMAL_CLOSURE)
            except Exception as exc:
                logger.debug("Closing upstream socket failed: %s", exc)
            self._connection = None

        if self._state != SessionState.ERRORED:
            self._transition(SessionState.CLOSED)
        self._finish(ClosedEvent(NORMAL_CLOSURE))

    def _finish(self, event: SessionEvent) -> None:
        # Only the first terminal event is delivered
        if self._finished:
            return
        self._finished = True
        self._events.put_nowait(event)

    async def _read_loop(self) -> None:
        assert self._connection is not None
        try:
            while True:
                raw = await self._connection.recv()
                message = parse_message(raw)
                if message is None:
                    continue
                if message.get("type") == "error":
                    logger.warning("Upstream error message: %s", message.get("data"))
                    continue
                text = extract_text(message, self.config.translating)
                if text:
                    self._events.put_nowait(TextEvent(text))
        except ConnectionClosed as exc:
            if self._closing:
                return
            if exc.normal:
                self._transition(SessionState.CLOSED)
                logger.info("Upstream socket closed normally")
            else:
                self._transition(SessionState.ERRORED)
                logger.warning("Upstream socket closed abnormally (code: %d)", exc.code)
            self._finish(ClosedEvent(exc.code))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)

    async def _write_loop(self) -> None:
        assert self._connection is not None
        try:
            while True:
                frame = await self._outbound.get()
                await self._connection.send(frame)
                self.frames_sent += 1
        except ConnectionClosed:
            # The reader reports the close code
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)

    def _fail(self, exc: Exception) -> None:
        if self._closing:
            return
        logger.error("Upstream socket error: %s", exc)
        self._transition(SessionState.ERRORED)
        self._finish(ErrorEvent(exc))
