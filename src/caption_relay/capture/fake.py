"""Fake audio source for tests.

Blocks are pushed by the test with :meth:`FakeSource.feed`, which calls the
pipeline exactly like an audio thread would.
"""

import numpy as np

from caption_relay.capture.protocol import BlockCallback


class FakeSource:
    """Deterministic in-memory audio source."""

    def __init__(self, sample_rate: int = 48000, error: Exception | None = None):
        """Initialize the fake source.

        Args:
            sample_rate: Native rate reported to the pipeline.
            error: Raised from open() to simulate an acquisition failure.
        """
        self._sample_rate = sample_rate
        self.error = error
        self.device_id = None
        self.open_count = 0
        self.close_count = 0
        self._on_block: BlockCallback | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def is_open(self) -> bool:
        return self._on_block is not None

    def open(self, device_id, on_block: BlockCallback) -> None:
        if self.error is not None:
            raise self.error
        self.device_id = device_id
        self.open_count += 1
        self._on_block = on_block

    def close(self) -> None:
        self.close_count += 1
        self._on_block = None

    def feed(self, block) -> None:
        """Deliver one raw block if the source is open."""
        if self._on_block is not None:
            self._on_block(np.asarray(block, dtype=np.float32))
