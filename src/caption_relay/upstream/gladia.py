"""Gladia live API: session negotiation and message parsing."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from caption_relay.config import SessionConfig
from caption_relay.constants import (
    AUTO_LANGUAGE,
    BIT_DEPTH,
    CHANNELS,
    GLADIA_API_URL,
    GLADIA_KEY_HEADER,
    LANGUAGE_CODES,
    NEGOTIATION_TIMEOUT_SECONDS,
    SAMPLE_RATE,
    TRANSLATION_MODEL,
)
from caption_relay.errors import QuotaExceeded, Unauthorized, UpstreamError

logger = logging.getLogger(__name__)


def build_session_request(config: SessionConfig) -> dict[str, Any]:
    """Build the JSON body that opens a live session."""
    if config.language == AUTO_LANGUAGE:
        language_config: dict[str, Any] = {
            "languages": list(LANGUAGE_CODES),
            "code_switching": True,
        }
    else:
        language_config = {"languages": [config.language]}

    body: dict[str, Any] = {
        "encoding": "wav/pcm",
        "sample_rate": SAMPLE_RATE,
        "bit_depth": BIT_DEPTH,
        "channels": CHANNELS,
        "endpointing": config.silence_threshold,
        "maximum_duration_without_endpointing": config.max_duration,
        "language_config": language_config,
    }

    realtime: dict[str, Any] = {}
    words = config.vocabulary_words
    if words:
        realtime["custom_vocabulary"] = True
        realtime["custom_vocabulary_config"] = {"vocabulary": words}
    if config.translating:
        realtime["translation"] = True
        realtime["translation_config"] = {
            "target_languages": [config.translate_to],
            "model": TRANSLATION_MODEL,
        }
    if realtime:
        body["realtime_processing"] = realtime

    return body


async def negotiate_session(
    http: httpx.AsyncClient,
    config: SessionConfig,
    url: str = GLADIA_API_URL,
    timeout: float = NEGOTIATION_TIMEOUT_SECONDS,
) -> str:
    """Create a live session and return the websocket URL to stream to.

    Raises:
        Unauthorized: The API key was rejected (401).
        QuotaExceeded: The account is out of credits (402).
        UpstreamError: Any other non-2xx response, a timeout, or a
            transport failure.
    """
    try:
        response = await http.post(
            url,
            json=build_session_request(config),
            headers={GLADIA_KEY_HEADER: config.credential},
            timeout=timeout,
        )
    except httpx.TimeoutException:
        raise UpstreamError(message="Session negotiation timed out") from None
    except httpx.HTTPError as exc:
        raise UpstreamError(message=f"API unreachable: {exc.__class__.__name__}") from exc

    if response.status_code == 401:
        raise Unauthorized()
    if response.status_code == 402:
        raise QuotaExceeded()
    if not response.is_success:
        raise UpstreamError(response.status_code)

    try:
        session_url = response.json()["url"]
    except (ValueError, KeyError, TypeError):
        raise UpstreamError(response.status_code, "API returned no session URL") from None
    logger.info("Negotiated upstream session")
    return session_url


class GladiaNegotiator:
    """Negotiates sessions over a shared httpx client."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        url: str = GLADIA_API_URL,
        timeout: float = NEGOTIATION_TIMEOUT_SECONDS,
    ):
        self._http = http or httpx.AsyncClient()
        self._owns_http = http is None
        self._url = url
        self._timeout = timeout

    async def __call__(self, config: SessionConfig) -> str:
        return await negotiate_session(self._http, config, self._url, self._timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def parse_message(raw: str | bytes) -> dict[str, Any] | None:
    """Decode one socket message. Anything that is not a JSON object is None."""
    try:
        message = json.loads(raw)
    except (ValueError, TypeError):
        return None
    return message if isinstance(message, dict) else None


def _utterance_text(utterance: Any) -> str | None:
    if not isinstance(utterance, dict):
        return None
    text = utterance.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    return None


def extract_text(message: dict[str, Any], translating: bool) -> str | None:
    """Pull caption text out of a transcript or translation event.

    While translating only translations are captioned, so the original
    utterance is not shown twice.
    """
    data = message.get("data")
    if not isinstance(data, dict):
        return None

    kind = message.get("type")
    if kind == "translation":
        return _utterance_text(data.get("translated_utterance"))
    if kind == "transcript" and data.get("is_final") is True and not translating:
        return _utterance_text(data.get("utterance"))
    return None
