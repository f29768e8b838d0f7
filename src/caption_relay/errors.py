"""Error taxonomy for the relay.

Configuration errors
    Caught before any network call. Surfaced immediately, never retried.
Negotiation errors
    The upstream API refused or failed to create a session. Not retried;
    the user has to fix the credential or quota and start again.
Capture errors
    The microphone could not be opened. Abort the start attempt.
Connection errors
    The upstream socket dropped while live. Retried with backoff.
Hub errors
    Raised to a subscriber that cannot be admitted.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay."""

    #: Text shown to the user when this error ends a session.
    user_message: str = "Unexpected error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)

    @property
    def message(self) -> str:
        return str(self)


# --- configuration -----------------------------------------------------------


class ConfigurationError(RelayError):
    user_message = "Invalid configuration"


class MissingCredential(ConfigurationError):
    user_message = "API key required"


# --- negotiation -------------------------------------------------------------


class NegotiationError(RelayError):
    user_message = "Could not create a transcription session"

    def __init__(self, message: str | None = None, status: int | None = None):
        super().__init__(message)
        self.status = status


class Unauthorized(NegotiationError):
    user_message = "Invalid API key"

    def __init__(self, message: str | None = None):
        super().__init__(message, status=401)


class QuotaExceeded(NegotiationError):
    user_message = "Insufficient credits"

    def __init__(self, message: str | None = None):
        super().__init__(message, status=402)


class UpstreamError(NegotiationError):
    def __init__(self, status: int | None = None, message: str | None = None):
        if message is None:
            message = f"API error: {status}" if status is not None else "API unreachable"
        super().__init__(message, status=status)


# --- capture -----------------------------------------------------------------


class CaptureError(RelayError):
    user_message = "Failed to access microphone."


class PermissionDenied(CaptureError):
    user_message = (
        "Microphone access denied. Please allow microphone access in your system settings."
    )


class DeviceNotFound(CaptureError):
    user_message = "No microphone found. Please connect a microphone."


class DeviceError(CaptureError):
    user_message = "Failed to access microphone."


class EnvironmentUnsupported(CaptureError):
    user_message = "Audio capture is not supported on this system (PortAudio missing)."


# --- connection / hub --------------------------------------------------------


class ConnectionLost(RelayError):
    """The upstream socket closed abnormally or errored."""

    user_message = "Connection failed"

    def __init__(self, message: str | None = None, code: int | None = None):
        super().__init__(message)
        self.code = code


class CapacityExceeded(RelayError):
    user_message = "Max clients reached"
