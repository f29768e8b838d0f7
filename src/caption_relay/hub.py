"""In-memory publish/subscribe hub for overlay clients.

One hub is owned by the application. Every overlay that opens the event
stream becomes a subscriber with its own bounded queue; publishing does a
single non-blocking enqueue per subscriber and evicts any subscriber whose
enqueue fails. A slow overlay therefore never delays the others.

The hub is meant to be used from a single asyncio event loop, so the
registry needs no lock. Fan-out iterates over a snapshot so a subscriber
removed mid-broadcast cannot disturb the iteration.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from caption_relay.constants import SSE_MAX_CLIENTS, SSE_QUEUE_SIZE
from caption_relay.errors import CapacityExceeded

logger = logging.getLogger(__name__)

EVENT_TEXT = "text"
EVENT_STYLE = "style"
EVENT_PING = "ping"
EVENT_SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class BroadcastMessage:
    """A single event in transit through the hub."""

    event: str
    data: dict[str, Any]
    id: int = 0

    def to_sse(self) -> str:
        """Format as a Server-Sent Events frame."""
        payload = json.dumps(self.data, separators=(",", ":"), ensure_ascii=False)
        return f"id:{self.id}\nevent:{self.event}\ndata:{payload}\n\n"


class Sink(Protocol):
    """Write side of a subscriber.

    ``enqueue`` must not block. Raising any exception marks the subscriber
    as dead.
    """

    def enqueue(self, message: BroadcastMessage) -> None: ...

    def close(self) -> None: ...


class SinkClosed(Exception):
    """Raised when enqueueing into a sink that has been closed."""


class QueueSink:
    """Bounded asyncio queue used as a subscriber sink."""

    _CLOSED = None

    def __init__(self, maxsize: int = SSE_QUEUE_SIZE):
        self._queue: asyncio.Queue[BroadcastMessage | None] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, message: BroadcastMessage) -> None:
        if self._closed:
            raise SinkClosed("sink is closed")
        # Raises asyncio.QueueFull for a subscriber that stopped reading
        self._queue.put_nowait(message)

    def close(self) -> None:
        """Close the sink and wake a waiting receiver."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    async def receive(self) -> BroadcastMessage | None:
        """Wait for the next message. Returns None once the sink is closed."""
        message = await self._queue.get()
        if message is self._CLOSED:
            # Keep the marker for any later receive call
            self._queue.put_nowait(self._CLOSED)
        return message


@dataclass
class Subscriber:
    """Registry entry for one connected overlay."""

    id: int
    sink: Sink
    connected_at: float = field(default_factory=time.time)


class Subscription:
    """Async iterator over the messages delivered to one subscriber.

    The iterator is lazy, infinite and not restartable. It ends when the
    subscriber is closed or evicted. Closing it, or cancelling the task that
    is waiting on it, removes the subscriber from the hub straight away.
    """

    def __init__(self, hub: "BroadcastHub", subscriber_id: int, sink: QueueSink):
        self._hub = hub
        self._sink = sink
        self.id = subscriber_id
        self._finished = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BroadcastMessage:
        if self._finished:
            raise StopAsyncIteration
        try:
            message = await self._sink.receive()
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if message is None:
            await self.aclose()
            raise StopAsyncIteration
        return message

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._hub.unregister(self.id)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class BroadcastHub:
    """Registry of overlay subscribers with non-blocking fan-out."""

    def __init__(self, max_clients: int = SSE_MAX_CLIENTS, queue_size: int = SSE_QUEUE_SIZE):
        self._max_clients = max_clients
        self._queue_size = queue_size
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    @property
    def max_clients(self) -> int:
        return self._max_clients

    def __contains__(self, subscriber_id: int) -> bool:
        return subscriber_id in self._subscribers

    def register(self, sink: Sink) -> int:
        """Add a subscriber writing into ``sink`` and return its id.

        Raises:
            CapacityExceeded: The hub already holds ``max_clients`` subscribers.
        """
        if len(self._subscribers) >= self._max_clients:
            logger.warning(
                "Max clients reached, rejecting new connection (current=%d, max=%d)",
                len(self._subscribers),
                self._max_clients,
            )
            raise CapacityExceeded()

        subscriber_id = next(self._ids)
        self._subscribers[subscriber_id] = Subscriber(subscriber_id, sink)
        logger.info("Client %d connected (total=%d)", subscriber_id, len(self._subscribers))
        return subscriber_id

    def unregister(self, subscriber_id: int) -> bool:
        """Remove a subscriber and close its sink. Returns False if unknown."""
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return False
        try:
            subscriber.sink.close()
        except Exception as exc:
            logger.debug("Closing sink of client %d failed: %s", subscriber_id, exc)
        logger.info("Client %d disconnected (total=%d)", subscriber_id, len(self._subscribers))
        return True

    def subscribe(self) -> Subscription:
        """Register a queue-backed subscriber and return its message stream.

        Raises:
            CapacityExceeded: The hub is full.
        """
        sink = QueueSink(self._queue_size)
        subscriber_id = self.register(sink)
        return Subscription(self, subscriber_id, sink)

    def publish_text(self, text: str) -> int:
        """Send caption text to every subscriber. Returns the delivery count."""
        delivered = self._broadcast(EVENT_TEXT, {"text": text})
        logger.debug("Broadcast text (length=%d, clients=%d)", len(text), delivered)
        return delivered

    def publish_style(self, style: dict[str, Any]) -> int:
        """Send a partial style record to every subscriber."""
        delivered = self._broadcast(EVENT_STYLE, dict(style))
        logger.info("Broadcast style %s (clients=%d)", style, delivered)
        return delivered

    def ping(self) -> int:
        """Keep-alive event with no payload."""
        return self._broadcast(EVENT_PING, {})

    def shutdown(self) -> int:
        """Tell every subscriber the server is going away.

        Connections are left open; the transport closes them on seeing the
        event or on process exit.
        """
        delivered = self._broadcast(EVENT_SHUTDOWN, {"message": "Server shutting down"})
        logger.warning("Broadcast shutdown (clients=%d)", delivered)
        return delivered

    def _broadcast(self, event: str, data: dict[str, Any]) -> int:
        message = BroadcastMessage(event, data, next(self._event_ids))
        failed: list[int] = []
        delivered = 0

        for subscriber_id, subscriber in list(self._subscribers.items()):
            try:
                subscriber.sink.enqueue(message)
                delivered += 1
            except Exception as exc:
                failed.append(subscriber_id)
                logger.warning(
                    "Failed to send to client %d: %s", subscriber_id, exc.__class__.__name__
                )

        for subscriber_id in failed:
            self.unregister(subscriber_id)

        return delivered
