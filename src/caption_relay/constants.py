"""Core constants for the caption relay.

The upstream transcription API expects 16kHz mono PCM16 audio.
"""

VERSION: str = "3.6.4"
APP_NAME: str = "caption-relay"

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz - required by the upstream API
BIT_DEPTH: int = 16
CHANNELS: int = 1
PCM_SCALE: float = 32767.0

# Upstream transcription API
GLADIA_API_URL: str = "https://api.gladia.io/v2/live"
GLADIA_KEY_HEADER: str = "x-gladia-key"
TRANSLATION_MODEL: str = "enhanced"
NEGOTIATION_TIMEOUT_SECONDS: float = 10.0
LANGUAGE_CODES: tuple[str, ...] = ("fr", "en", "es", "de", "it", "pt", "ja", "zh", "ko", "ar")
AUTO_LANGUAGE: str = "auto"

# Websocket close codes
NORMAL_CLOSURE: int = 1000
ABNORMAL_CLOSURE: int = 1006

# Reconnection policy
RECONNECT_MAX_ATTEMPTS: int = 5
RECONNECT_BASE_DELAY_SECONDS: float = 1.0
RESTART_DELAY_SECONDS: float = 0.2

# Outbound audio frames buffered between the audio thread and the socket
OUTBOUND_QUEUE_FRAMES: int = 64

# Server-Sent Events
SSE_KEEP_ALIVE_SECONDS: float = 30.0
SSE_MAX_CLIENTS: int = 100
SSE_QUEUE_SIZE: int = 256

# Validation bounds
MAX_TEXT_LENGTH: int = 10_000
FONT_SIZE_MIN: float = 8
FONT_SIZE_MAX: float = 200
POSITION_MIN: float = 0
POSITION_MAX: float = 100
