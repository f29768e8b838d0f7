"""Caption publishers used by the orchestrator.

``hub_publisher`` publishes straight into a hub living in the same process.
``LocalBroadcastClient`` posts to a relay server's ``/broadcast`` endpoint.
"""

from __future__ import annotations

import logging

import httpx

from caption_relay.hub import BroadcastHub

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:8080"


def hub_publisher(hub: BroadcastHub):
    """Publisher that writes into ``hub`` directly."""

    async def publish(text: str) -> None:
        hub.publish_text(text)

    return publish


class LocalBroadcastClient:
    """Posts caption text to a running relay server."""

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        http: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None

    async def __call__(self, text: str) -> None:
        await self.broadcast(text)

    async def broadcast(self, text: str) -> None:
        """Send one caption.

        Raises:
            httpx.HTTPStatusError: The server rejected the text.
            httpx.HTTPError: The server could not be reached.
        """
        response = await self._http.post(f"{self.base_url}/broadcast", json={"text": text})
        response.raise_for_status()

    async def style(self, **fields) -> None:
        """Send a partial style update (fontSize, posX, posY, bgStyle)."""
        response = await self._http.post(f"{self.base_url}/style", json=fields)
        response.raise_for_status()

    async def health(self) -> dict:
        response = await self._http.get(f"{self.base_url}/health")
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
