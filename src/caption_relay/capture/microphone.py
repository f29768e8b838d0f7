"""Microphone source using ``sounddevice`` (PortAudio).

PortAudio exposes no echo cancellation or noise suppression switches; the
request is logged and the raw device signal is used. This module imports
``sounddevice`` lazily so the server can run on machines without PortAudio.
"""

from __future__ import annotations

import logging

import numpy as np

from caption_relay.capture.protocol import BlockCallback
from caption_relay.errors import (
    DeviceError,
    DeviceNotFound,
    EnvironmentUnsupported,
    PermissionDenied,
)

logger = logging.getLogger(__name__)

# PortAudio error codes
PA_INVALID_DEVICE = -9996
PA_DEVICE_UNAVAILABLE = -9985

BLOCK_MS = 100


def _load_sounddevice():
    try:
        import sounddevice as sd
    except OSError as exc:
        # Raised by sounddevice when the PortAudio library is missing
        raise EnvironmentUnsupported(f"PortAudio unavailable: {exc}") from exc
    return sd


def list_input_devices() -> list[dict]:
    """Available input devices as ``{"id", "name", "default", "sample_rate"}``."""
    sd = _load_sounddevice()
    default_input = sd.default.device[0]
    devices = []
    for index, device in enumerate(sd.query_devices()):
        if device["max_input_channels"] > 0:
            devices.append(
                {
                    "id": index,
                    "name": device["name"],
                    "default": index == default_input,
                    "sample_rate": int(device["default_samplerate"]),
                }
            )
    return devices


def _map_portaudio_error(exc: Exception) -> Exception:
    message = str(exc)
    lowered = message.lower()
    code = exc.args[1] if len(exc.args) > 1 else None
    if "permission" in lowered or "not permitted" in lowered or "access denied" in lowered:
        return PermissionDenied(message)
    if code == PA_INVALID_DEVICE or "invalid device" in lowered:
        return DeviceNotFound(message)
    return DeviceError(message)


class MicrophoneSource:
    """Mono float32 input stream at the device's native sample rate."""

    def __init__(self, echo_cancellation: bool = True, noise_suppression: bool = True):
        self.echo_cancellation = echo_cancellation
        self.noise_suppression = noise_suppression
        self._stream = None
        self._sample_rate = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def open(self, device_id: str | int | None, on_block: BlockCallback) -> None:
        sd = _load_sounddevice()

        if self.echo_cancellation or self.noise_suppression:
            logger.debug("Echo cancellation / noise suppression not available through PortAudio")

        try:
            info = sd.query_devices(device_id, kind="input")
        except ValueError as exc:
            raise DeviceNotFound(str(exc)) from exc
        except sd.PortAudioError as exc:
            raise _map_portaudio_error(exc) from exc

        sample_rate = int(info["default_samplerate"])

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug("Audio status: %s", status)
            audio = indata[:, 0] if indata.ndim > 1 else indata.reshape(-1)
            on_block(np.array(audio, dtype=np.float32))

        try:
            stream = sd.InputStream(
                device=device_id,
                samplerate=sample_rate,
                channels=1,
                dtype="float32",
                blocksize=sample_rate * BLOCK_MS // 1000,
                callback=callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise _map_portaudio_error(exc) from exc

        self._stream = stream
        self._sample_rate = sample_rate

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
