"""Audio source protocol.

A source delivers raw float32 mono blocks at its native sample rate from
its own audio thread. Resampling and framing happen in the pipeline, so the
real microphone and the fake source used in tests share everything above
this boundary.
"""

from collections.abc import Callable
from typing import Protocol

import numpy as np

BlockCallback = Callable[[np.ndarray], None]
FrameCallback = Callable[[bytes], None]


class AudioSource(Protocol):
    """Protocol for microphone-like inputs."""

    @property
    def sample_rate(self) -> int:
        """Native sample rate of the opened device in Hz."""
        ...

    def open(self, device_id: str | int | None, on_block: BlockCallback) -> None:
        """Start delivering blocks to ``on_block``.

        Must request a single channel with echo cancellation and noise
        suppression where the backend supports them.

        Raises:
            PermissionDenied, DeviceNotFound, DeviceError,
            EnvironmentUnsupported: The input could not be opened.
        """
        ...

    def close(self) -> None:
        """Stop delivering blocks. Must be safe to call repeatedly."""
        ...
