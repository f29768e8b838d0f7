"""Capture pipeline: raw microphone blocks in, 16kHz PCM16 frames out.

Frames are produced on the audio thread. ``FrameBridge`` moves them onto the
event loop without ever blocking that thread: frames go into a bounded deque
and a drain is scheduled with ``call_soon_threadsafe``. When the loop falls
behind, the oldest frames are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable

import numpy as np

from caption_relay.audio import resample_to_pcm16
from caption_relay.capture.protocol import AudioSource, FrameCallback
from caption_relay.constants import OUTBOUND_QUEUE_FRAMES
from caption_relay.errors import CaptureError

logger = logging.getLogger(__name__)


def describe_capture_error(exc: BaseException) -> str:
    """User-facing guidance for a capture failure."""
    if isinstance(exc, CaptureError):
        return exc.user_message
    return str(exc) or CaptureError.user_message


class CapturePipeline:
    """Owns one audio source for the duration of a session."""

    def __init__(self, source: AudioSource):
        self.source = source
        self._on_frame: FrameCallback | None = None
        self._active = False
        self.frames_emitted = 0

    @property
    def active(self) -> bool:
        return self._active

    def acquire(self, device_id: str | int | None, on_frame: FrameCallback) -> AudioSource:
        """Open the source and emit each processed frame to ``on_frame``.

        Raises:
            CaptureError: The source could not be opened. Nothing is retried.
        """
        if self._active:
            self.release()
        self._on_frame = on_frame
        self.source.open(device_id, self._on_block)
        self._active = True
        logger.info(
            "Audio capture started (device: %s, rate: %d Hz)",
            device_id if device_id is not None else "default",
            self.source.sample_rate,
        )
        return self.source

    def process(self, raw: np.ndarray) -> bytes:
        """Resample one block from the device rate to 16kHz PCM16."""
        return resample_to_pcm16(raw, self.source.sample_rate)

    def release(self) -> None:
        """Stop the source. Safe when never started or already released."""
        was_active = self._active
        self._active = False
        self._on_frame = None
        try:
            self.source.close()
        except Exception as exc:
            logger.debug("Closing audio source failed: %s", exc)
        if was_active:
            logger.info("Audio capture stopped")

    def _on_block(self, raw: np.ndarray) -> None:
        # Runs on the audio thread
        on_frame = self._on_frame
        if not self._active or on_frame is None:
            return
        frame = self.process(raw)
        if not frame:
            return
        self.frames_emitted += 1
        try:
            on_frame(frame)
        except Exception as exc:
            logger.error("Audio frame callback error: %s", exc)


class FrameBridge:
    """Non-blocking handoff of frames from the audio thread to the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        deliver: Callable[[bytes], None],
        max_frames: int = OUTBOUND_QUEUE_FRAMES,
    ):
        self._loop = loop
        self._deliver = deliver
        self._frames: deque[bytes] = deque(maxlen=max_frames)
        self._lock = threading.Lock()
        self._scheduled = False
        self._closed = False
        self.dropped = 0

    def __call__(self, frame: bytes) -> None:
        """Accept a frame from any thread. Never blocks on the consumer."""
        if self._closed:
            return
        with self._lock:
            if len(self._frames) == self._frames.maxlen:
                self.dropped += 1
            self._frames.append(frame)
            if self._scheduled:
                return
            self._scheduled = True
        try:
            self._loop.call_soon_threadsafe(self._drain)
        except RuntimeError:
            # Loop already closed
            self._closed = True

    def close(self) -> None:
        self._closed = True
        with self._lock:
            self._frames.clear()

    def _drain(self) -> None:
        with self._lock:
            frames = list(self._frames)
            self._frames.clear()
            self._scheduled = False
        if self._closed:
            return
        for frame in frames:
            self._deliver(frame)
