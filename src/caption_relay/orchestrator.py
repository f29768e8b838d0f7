"""Session orchestrator: the single source of truth for "is transcription running".

Coordinates the capture pipeline, the upstream session and the caption
publisher into one lifecycle:

    IDLE -> CONNECTING -> LIVE -> RECONNECTING -> CONNECTING -> ...
                  \\__________\\______________\\____> ERROR

An abnormal socket close while live is retried with exponential backoff up to
``max_attempts`` times; negotiation and capture failures are never retried.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from caption_relay.capture.pipeline import CapturePipeline, FrameBridge, describe_capture_error
from caption_relay.capture.protocol import AudioSource
from caption_relay.config import SessionConfig
from caption_relay.constants import (
    RECONNECT_BASE_DELAY_SECONDS,
    RECONNECT_MAX_ATTEMPTS,
    RESTART_DELAY_SECONDS,
)
from caption_relay.errors import (
    CaptureError,
    ConnectionLost,
    MissingCredential,
    NegotiationError,
    RelayError,
)
from caption_relay.upstream.protocol import Transport
from caption_relay.upstream.session import (
    ClosedEvent,
    ErrorEvent,
    Negotiator,
    TextEvent,
    UpstreamSession,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[str], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

IDLE_PREVIEW = "Press start to begin"


class Status(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class Snapshot:
    """What a display layer needs to render the session."""

    status: Status
    status_text: str
    preview: str
    error_message: str | None
    elapsed: str
    reconnect_attempts: int


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY_SECONDS) -> float:
    """Delay before reconnect ``attempt`` (1-based)."""
    return base * 2 ** (attempt - 1)


def format_elapsed(seconds: float) -> str:
    """Format a duration as ``MM:SS``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


class SessionOrchestrator:
    """Runs one transcription session at a time and keeps it alive."""

    def __init__(
        self,
        negotiator: Negotiator,
        transport: Transport,
        source: AudioSource,
        publish: Publisher | None = None,
        *,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        restart_delay: float = RESTART_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._negotiator = negotiator
        self._transport = transport
        self._capture = CapturePipeline(source)
        self._publish = publish
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._restart_delay = restart_delay
        self._sleep = sleep
        self._clock = clock

        self._status = Status.IDLE
        self._status_text = "Ready"
        self._preview = IDLE_PREVIEW
        self._error_message: str | None = None
        self._attempts = 0
        self._started_at: float | None = None
        self._elapsed = "00:00"

        self._config: SessionConfig | None = None
        self._session: UpstreamSession | None = None
        self._bridge: FrameBridge | None = None
        self._watcher: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._publish_tasks: set[asyncio.Task] = set()
        self._listeners: list[Callable[[Snapshot], None]] = []

    # --- observable state ---------------------------------------------------

    @property
    def status(self) -> Status:
        return self._status

    @property
    def status_text(self) -> str:
        return self._status_text

    @property
    def preview(self) -> str:
        return self._preview

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def elapsed(self) -> str:
        return self._elapsed

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def session(self) -> UpstreamSession | None:
        return self._session

    @property
    def config(self) -> SessionConfig | None:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._status == Status.LIVE

    def snapshot(self) -> Snapshot:
        return Snapshot(
            status=self._status,
            status_text=self._status_text,
            preview=self._preview,
            error_message=self._error_message,
            elapsed=self._elapsed,
            reconnect_attempts=self._attempts,
        )

    def add_listener(self, listener: Callable[[Snapshot], None]) -> None:
        """Call ``listener`` with a snapshot after every state change."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    def _set_status(self, status: Status, text: str, preview: str | None = None) -> None:
        if status != self._status:
            logger.info("Session %s -> %s", self._status.value, status.value)
        self._status = status
        self._status_text = text
        if preview is not None:
            self._preview = preview
        self._notify()

    def _set_error(self, message: str) -> None:
        logger.error("Session error: %s", message)
        self._error_message = message
        self._set_status(Status.ERROR, "Error")

    # --- lifecycle ----------------------------------------------------------

    async def start(self, config: SessionConfig) -> None:
        """Start a new session, replacing any running one.

        Raises:
            MissingCredential: No API key; nothing was contacted.
            NegotiationError: The API refused the session.
            CaptureError: The microphone could not be opened.
            ConnectionLost: The socket could not be opened.
        """
        self._cancel_reconnect()
        self._attempts = 0
        await self._start(config)

    async def stop(self) -> None:
        """Tear everything down and return to IDLE. Idempotent."""
        self._cancel_reconnect()
        self._attempts = 0
        await self._teardown()
        self._error_message = None
        self._set_status(Status.IDLE, "Ready", IDLE_PREVIEW)

    async def restart(self, config: SessionConfig) -> None:
        """Apply new settings: stop, wait briefly, start again."""
        await self.stop()
        await self._sleep(self._restart_delay)
        await self.start(config)

    async def aclose(self) -> None:
        """Stop and wait for in-flight caption publishes."""
        await self.stop()
        if self._publish_tasks:
            await asyncio.gather(*self._publish_tasks, return_exceptions=True)

    async def _start(self, config: SessionConfig) -> None:
        if not config.credential:
            error = MissingCredential()
            self._set_error(error.message)
            raise error

        # At most one socket: the previous session is fully closed first
        await self._teardown()

        self._config = config
        self._error_message = None
        self._set_status(Status.CONNECTING, "Connecting...", "Connecting to transcription service...")

        session = UpstreamSession(config, self._negotiator, self._transport)
        self._session = session

        try:
            await session.negotiate()
            if self._superseded(session):
                await session.close()
                return
            await session.connect()
            if self._superseded(session):
                await session.close()
                return
        except Exception as exc:
            if self._superseded(session):
                # A newer start or stop owns the orchestrator now
                logger.info("Discarding failure of a replaced start: %s", exc)
                await session.close()
                return
            await self._teardown()
            if isinstance(exc, ConnectionLost) and self._attempts > 0:
                await self._connection_lost(exc)
                return
            if isinstance(exc, (NegotiationError, ConnectionLost)):
                self._set_error(exc.message)
            else:
                logger.exception("Unexpected error while connecting")
                self._set_error(str(exc) or exc.__class__.__name__)
            raise

        self._set_status(Status.CONNECTING, "Connecting...", "Initializing audio...")
        bridge = FrameBridge(asyncio.get_running_loop(), session.send)
        self._bridge = bridge
        try:
            self._capture.acquire(config.device_id, bridge)
        except CaptureError as exc:
            await self._teardown()
            self._set_error(describe_capture_error(exc))
            raise

        session.mark_streaming()
        self._attempts = 0
        self._started_at = self._clock()
        self._elapsed = "00:00"
        self._timer = asyncio.create_task(self._tick(), name="session-timer")
        self._watcher = asyncio.create_task(self._watch(session), name="session-watcher")
        self._set_status(Status.LIVE, "Live", "Listening...")

    def _superseded(self, session: UpstreamSession) -> bool:
        # stop() or another start() ran while we were awaiting
        return self._session is not session

    async def _teardown(self) -> None:
        """Release audio, socket and timer. Keeps the reconnect counter."""
        current = asyncio.current_task()

        for name in ("_watcher", "_timer"):
            task = getattr(self, name)
            setattr(self, name, None)
            if task is None or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._bridge is not None:
            self._bridge.close()
            self._bridge = None
        self._capture.release()

        session, self._session = self._session, None
        if session is not None:
            await session.close()

        self._started_at = None
        self._elapsed = "00:00"

    # --- socket events ------------------------------------------------------

    async def _watch(self, session: UpstreamSession) -> None:
        async for event in session.events():
            if isinstance(event, TextEvent):
                self._on_text(event.text)
            elif isinstance(event, ClosedEvent):
                if event.normal:
                    logger.info("Upstream ended the session")
                    await self._teardown()
                    self._set_status(Status.IDLE, "Ready", IDLE_PREVIEW)
                else:
                    await self._connection_lost(
                        ConnectionLost(f"Disconnected (code: {event.code})", code=event.code)
                    )
            elif isinstance(event, ErrorEvent):
                await self._connection_lost(ConnectionLost(f"Connection failed: {event.error}"))

    def _on_text(self, text: str) -> None:
        self._preview = text
        self._notify()
        if self._publish is None:
            return
        task = asyncio.create_task(self._publish_text(text))
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)

    async def _publish_text(self, text: str) -> None:
        try:
            await self._publish(text)
        except Exception as exc:
            logger.warning("Broadcast failed: %s", exc)

    # --- reconnection -------------------------------------------------------

    async def _connection_lost(self, exc: ConnectionLost) -> None:
        retrying = self._status == Status.LIVE or self._attempts > 0
        await self._teardown()

        if not retrying:
            self._set_error(exc.message)
            return
        if self._attempts >= self._max_attempts:
            self._set_error(f"{exc.message} - max retries reached")
            return

        self._attempts += 1
        delay = backoff_delay(self._attempts, self._base_delay)
        logger.warning(
            "Connection lost, reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._attempts,
            self._max_attempts,
        )
        self._set_status(
            Status.RECONNECTING,
            f"Reconnecting ({self._attempts}/{self._max_attempts})...",
            f"Connection lost. Reconnecting in {delay:g}s...",
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay, self._config), name="session-reconnect"
        )

    async def _reconnect_after(self, delay: float, config: SessionConfig) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        try:
            await self._start(config)
        except RelayError as exc:
            logger.warning("Reconnect attempt failed: %s", exc)
        except Exception:
            logger.exception("Reconnect attempt crashed")
            await self._teardown()
            self._set_error("Reconnect failed")

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(1)
            if self._started_at is None:
                return
            self._elapsed = format_elapsed(self._clock() - self._started_at)
            self._notify()
