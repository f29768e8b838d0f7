"""Audio resampling and conversion utilities.

Microphone blocks arrive as float32 samples at the device's native rate and
leave as 16kHz mono PCM16 little-endian bytes.
"""

import numpy as np

from caption_relay.constants import PCM_SCALE, SAMPLE_RATE


def resampled_length(num_samples: int, device_rate: int) -> int:
    """Number of output samples produced from one block at ``device_rate``."""
    return (num_samples * SAMPLE_RATE) // int(device_rate)


def resample_linear(samples: np.ndarray, device_rate: int) -> np.ndarray:
    """Resample a block to 16kHz with linear interpolation.

    Each output sample ``i`` is taken at source position ``i * ratio`` and
    interpolated between the two bracketing input samples. Past the end of
    the block the last sample is held.

    Args:
        samples: Float32 mono samples at ``device_rate``.
        device_rate: Native sample rate of the capture device in Hz.

    Returns:
        Float64 array at 16kHz (not clamped).
    """
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    ratio = device_rate / SAMPLE_RATE
    out_len = resampled_length(len(samples), device_rate)
    if out_len == 0:
        return np.zeros(0, dtype=np.float64)

    src = np.arange(out_len, dtype=np.float64) * ratio
    lower = np.floor(src).astype(np.int64)
    frac = src - lower
    upper = np.minimum(lower + 1, len(samples) - 1)

    s1 = samples[lower].astype(np.float64)
    s2 = np.where(lower + 1 < len(samples), samples[upper], s1)
    return s1 + frac * (s2 - s1)


def quantize_pcm16(audio: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1], scale by 32767 and round to the nearest int16.

    Halves round towards positive infinity.
    """
    scaled = np.clip(np.asarray(audio, dtype=np.float64), -1.0, 1.0) * PCM_SCALE
    rounded = np.floor(scaled + 0.5)
    return rounded.astype(np.int16)


def resample_to_pcm16(samples: np.ndarray, device_rate: int) -> bytes:
    """Convert one float32 block at ``device_rate`` to 16kHz PCM16 bytes."""
    pcm = quantize_pcm16(resample_linear(samples, device_rate))
    return pcm.astype("<i2").tobytes()

