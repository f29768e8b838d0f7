"""Local caption relay: microphone to live transcription to browser overlays."""

from caption_relay.constants import (
    CHANNELS,
    SAMPLE_RATE,
    SSE_MAX_CLIENTS,
    VERSION,
)

__version__ = VERSION

__all__ = [
    "SAMPLE_RATE",
    "CHANNELS",
    "SSE_MAX_CLIENTS",
    "VERSION",
]
