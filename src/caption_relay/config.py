"""Session and server configuration.

``SessionConfig`` is built fresh for every transcription session and never
mutated while the session runs. ``ServerSettings`` is read once from the
environment when the server starts.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Mapping

from caption_relay.constants import (
    AUTO_LANGUAGE,
    LANGUAGE_CODES,
    SSE_KEEP_ALIVE_SECONDS,
    SSE_MAX_CLIENTS,
)
from caption_relay.errors import ConfigurationError

_VOCABULARY_SEPARATORS = re.compile(r"[,;]+")
_LOG_LEVELS = ("trace", "debug", "info", "warn", "warning", "error", "fatal", "critical")


def split_vocabulary(raw: str) -> list[str]:
    """Split a comma/semicolon separated word list, dropping blanks."""
    words = (word.strip() for word in _VOCABULARY_SEPARATORS.split(raw or ""))
    return [word for word in words if word]


@dataclass(frozen=True)
class SessionConfig:
    """Settings for one upstream transcription session."""

    api_key: str
    language: str = "fr"
    translate_to: str = ""
    silence_threshold: float = 0.05
    max_duration: float = 5
    vocabulary: str = ""
    device_id: str | int | None = None

    def __post_init__(self):
        if self.language != AUTO_LANGUAGE and self.language not in LANGUAGE_CODES:
            raise ConfigurationError(f"Unsupported language: {self.language!r}")
        if self.translate_to and self.translate_to not in LANGUAGE_CODES:
            raise ConfigurationError(f"Unsupported translation target: {self.translate_to!r}")
        if self.silence_threshold <= 0:
            raise ConfigurationError("Silence threshold must be positive")
        if self.max_duration <= 0:
            raise ConfigurationError("Max duration must be positive")

    @property
    def credential(self) -> str:
        return (self.api_key or "").strip()

    @property
    def translating(self) -> bool:
        return bool(self.translate_to)

    @property
    def vocabulary_words(self) -> list[str]:
        return split_vocabulary(self.vocabulary)


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int, maximum: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if not minimum <= value <= maximum:
        raise ConfigurationError(f"{name} must be between {minimum} and {maximum}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive")
    return value


@dataclass
class ServerSettings:
    """Local HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_clients: int = SSE_MAX_CLIENTS
    keep_alive_seconds: float = SSE_KEEP_ALIVE_SECONDS

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ServerSettings":
        """Load settings from environment variables.

        Empty strings are treated as unset. Raises ConfigurationError on
        values that fail validation.
        """
        env = os.environ if env is None else env

        log_level = (env.get("LOG_LEVEL") or "info").lower()
        if log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")

        cors = env.get("CORS_ORIGIN") or "*"
        origins = [origin.strip() for origin in cors.split(",") if origin.strip()]

        return cls(
            host=env.get("HOST") or "0.0.0.0",
            port=_env_int(env, "PORT", 8080, 1, 65535),
            log_level=log_level,
            cors_origins=origins or ["*"],
            max_clients=_env_int(env, "SSE_MAX_CLIENTS", SSE_MAX_CLIENTS, 1, 10_000),
            keep_alive_seconds=_env_float(env, "SSE_KEEP_ALIVE_SECONDS", SSE_KEEP_ALIVE_SECONDS),
        )
