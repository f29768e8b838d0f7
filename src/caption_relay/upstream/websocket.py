"""Upstream transport backed by the ``websockets`` library."""

import asyncio

import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed
from websockets.exceptions import InvalidHandshake

from caption_relay.constants import ABNORMAL_CLOSURE, NORMAL_CLOSURE
from caption_relay.upstream.protocol import ConnectionClosed


def _close_code(exc: WebSocketClosed) -> int:
    # rcvd is None when the connection dropped without a close frame
    if exc.rcvd is not None:
        return exc.rcvd.code
    return ABNORMAL_CLOSURE


class WebSocketConnection:
    """Adapts a websockets client connection to the Connection protocol."""

    def __init__(self, ws):
        self._ws = ws

    async def send(self, frame: bytes) -> None:
        try:
            await self._ws.send(frame)
        except WebSocketClosed as exc:
            raise ConnectionClosed(_close_code(exc)) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except WebSocketClosed as exc:
            raise ConnectionClosed(_close_code(exc)) from exc

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        await self._ws.close(code=code)


class WebSocketTransport:
    """Opens upstream sockets with ``websockets.connect``."""

    def __init__(
        self,
        open_timeout: float = 10,
        ping_interval: float | None = 20,
        ping_timeout: float | None = 20,
        close_timeout: float = 5,
    ):
        self._options = {
            "open_timeout": open_timeout,
            "ping_interval": ping_interval,
            "ping_timeout": ping_timeout,
            "close_timeout": close_timeout,
            "max_size": None,
        }

    async def connect(self, url: str) -> WebSocketConnection:
        try:
            ws = await websockets.connect(url, **self._options)
        except InvalidHandshake as exc:
            raise ConnectionClosed(ABNORMAL_CLOSURE, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise ConnectionClosed(ABNORMAL_CLOSURE, "opening handshake timed out") from exc
        return WebSocketConnection(ws)
