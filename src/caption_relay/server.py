"""FastAPI server fanning caption events out to overlay clients.

Overlays open ``GET /stream`` and receive Server-Sent Events. The capture
client pushes caption text to ``POST /broadcast``; the control surface pushes
style changes to ``POST /style``. All of them go through one BroadcastHub
owned by the application.
"""

import asyncio
import json
import logging
import socket
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from caption_relay.config import ServerSettings
from caption_relay.constants import VERSION
from caption_relay.errors import CapacityExceeded
from caption_relay.hub import EVENT_SHUTDOWN, BroadcastHub, Subscription
from caption_relay.validators import BroadcastPayload, StylePayload, field_errors

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def sse_events(subscription: Subscription) -> AsyncIterator[str]:
    """Render a subscription as SSE frames.

    Stops after forwarding a shutdown event. Client disconnects cancel the
    generator, which removes the subscriber from the hub.
    """
    async with subscription:
        async for message in subscription:
            yield message.to_sse()
            if message.event == EVENT_SHUTDOWN:
                break


async def keep_alive(hub: BroadcastHub, interval: float) -> None:
    """Ping every subscriber at a fixed interval until cancelled."""
    while True:
        await asyncio.sleep(interval)
        hub.ping()
        logger.debug("Keep-alive ping sent (clients=%d)", hub.client_count)


def local_ip() -> str | None:
    """Best guess at this machine's LAN IPv4 address, for overlay URLs."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect only selects the outgoing interface
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()
    if address.startswith("127."):
        return None
    return address


def _invalid(errors: dict[str, list[str]]) -> JSONResponse:
    return JSONResponse(status_code=422, content={"success": False, "error": errors})


async def _read_json(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def create_app(
    hub: BroadcastHub | None = None,
    settings: ServerSettings | None = None,
) -> FastAPI:
    """Create a FastAPI application around a broadcast hub.

    Args:
        hub: Hub to publish into. A new one is created when omitted.
        settings: Server settings; defaults are used when omitted.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or ServerSettings()
    hub = hub or BroadcastHub(max_clients=settings.max_clients)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pinger = asyncio.create_task(keep_alive(hub, settings.keep_alive_seconds))
        logger.info("Broadcast hub ready (max_clients=%d)", hub.max_clients)
        yield
        hub.shutdown()
        pinger.cancel()
        try:
            await pinger
        except asyncio.CancelledError:
            pass

    app = FastAPI(title="Caption Relay", version=VERSION, lifespan=lifespan)
    app.state.hub = hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": VERSION,
            "clients": hub.client_count,
            "uptime": time.monotonic() - started_at,
        }

    @app.get("/network-ip")
    async def network_ip():
        """LAN address overlays on other machines can reach."""
        return {"ip": local_ip()}

    @app.get("/favicon.ico")
    async def favicon():
        return Response(status_code=204)

    @app.get("/stream")
    async def stream():
        """Server-Sent Events stream for one overlay.

        Events: ``text``, ``style``, ``ping``, ``shutdown``, each with a JSON
        ``data`` payload.
        """
        try:
            subscription = hub.subscribe()
        except CapacityExceeded as exc:
            return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})
        return StreamingResponse(
            sse_events(subscription),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/broadcast")
    async def broadcast(request: Request):
        """Send caption text to every connected overlay."""
        body = await _read_json(request)
        if body is None:
            return _invalid({"body": ["Invalid JSON"]})
        try:
            payload = BroadcastPayload.model_validate(body)
        except ValidationError as exc:
            return _invalid(field_errors(exc))
        hub.publish_text(payload.text)
        return {"success": True}

    @app.post("/style")
    async def style(request: Request):
        """Update overlay styling. Absent fields are left unchanged."""
        body = await _read_json(request)
        if body is None:
            return _invalid({"body": ["Invalid JSON"]})
        try:
            payload = StylePayload.model_validate(body)
        except ValidationError as exc:
            return _invalid(field_errors(exc))
        hub.publish_style(payload.partial())
        return {"success": True}

    return app
