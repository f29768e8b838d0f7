"""Unit tests for the FastAPI broadcast server."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from caption_relay.config import ServerSettings
from caption_relay.constants import MAX_TEXT_LENGTH, VERSION
from caption_relay.hub import EVENT_SHUTDOWN, BroadcastHub
from caption_relay.server import create_app, keep_alive, sse_events


class RecordingSink:
    def __init__(self):
        self.messages = []

    def enqueue(self, message):
        self.messages.append(message)

    def close(self):
        pass


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def overlay(hub):
    sink = RecordingSink()
    hub.register(sink)
    return sink


@pytest.fixture
def client(hub):
    return TestClient(create_app(hub))


class TestHealthEndpoint:
    """Tests for the informational endpoints."""

    def test_health_returns_ok(self, client, overlay):
        """Health reports status, version and connected clients."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == VERSION
        assert data["clients"] == 1
        assert data["uptime"] >= 0

    def test_network_ip(self, client, monkeypatch):
        monkeypatch.setattr("caption_relay.server.local_ip", lambda: "192.168.1.20")
        assert client.get("/network-ip").json() == {"ip": "192.168.1.20"}

    def test_favicon_is_empty(self, client):
        response = client.get("/favicon.ico")
        assert response.status_code == 204
        assert response.content == b""


class TestBroadcastEndpoint:
    """Tests for POST /broadcast."""

    def test_broadcast_fans_out(self, client, overlay):
        response = client.post("/broadcast", json={"text": "Bonjour"})
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert [m.data for m in overlay.messages] == [{"text": "Bonjour"}]

    def test_max_length_accepted(self, client, overlay):
        response = client.post("/broadcast", json={"text": "a" * MAX_TEXT_LENGTH})
        assert response.status_code == 200
        assert len(overlay.messages) == 1

    def test_over_max_length_rejected(self, client, overlay):
        """10001 characters is refused and nothing is broadcast."""
        response = client.post("/broadcast", json={"text": "a" * (MAX_TEXT_LENGTH + 1)})
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert "text" in body["error"]
        assert overlay.messages == []

    @pytest.mark.parametrize("payload", [{"text": ""}, {}, {"text": 42}])
    def test_invalid_text_rejected(self, client, overlay, payload):
        response = client.post("/broadcast", json=payload)
        assert response.status_code == 422
        assert response.json()["success"] is False
        assert overlay.messages == []

    def test_malformed_json_rejected(self, client, overlay):
        response = client.post(
            "/broadcast",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422
        assert response.json()["error"] == {"body": ["Invalid JSON"]}

    def test_non_object_body_rejected(self, client, overlay):
        response = client.post("/broadcast", json=["Bonjour"])
        assert response.status_code == 422
        assert overlay.messages == []


class TestStyleEndpoint:
    """Tests for POST /style."""

    @pytest.mark.parametrize("size", [8, 200])
    def test_font_size_bounds_accepted(self, client, overlay, size):
        response = client.post("/style", json={"fontSize": size})
        assert response.status_code == 200
        assert overlay.messages[0].data == {"fontSize": size}

    @pytest.mark.parametrize("size", [7, 201])
    def test_font_size_out_of_range_rejected(self, client, overlay, size):
        response = client.post("/style", json={"fontSize": size})
        assert response.status_code == 422
        assert "fontSize" in response.json()["error"]
        assert overlay.messages == []

    def test_only_present_fields_broadcast(self, client, overlay):
        """Absent fields are not sent, so overlays keep their values."""
        response = client.post("/style", json={"posX": 10, "bgStyle": "box", "color": "red"})
        assert response.status_code == 200
        assert overlay.messages[0].data == {"posX": 10, "bgStyle": "box"}

    def test_numeric_strings_accepted(self, client, overlay):
        response = client.post("/style", json={"posY": "75"})
        assert response.status_code == 200
        assert overlay.messages[0].data == {"posY": 75}

    @pytest.mark.parametrize(
        "payload",
        [{"bgStyle": "blur"}, {"posX": -1}, {"posY": 101}, {"fontSize": "big"}],
    )
    def test_invalid_style_rejected(self, client, overlay, payload):
        response = client.post("/style", json=payload)
        assert response.status_code == 422
        assert overlay.messages == []


class TestStreamEndpoint:
    """Tests for GET /stream and the SSE generator behind it."""

    def test_stream_refused_when_full(self):
        """The hub's capacity error becomes a 503."""
        client = TestClient(create_app(BroadcastHub(max_clients=0)))
        response = client.get("/stream")
        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "Max clients reached"}

    @pytest.mark.asyncio
    async def test_sse_events_yields_frames_until_shutdown(self, hub):
        subscription = hub.subscribe()
        frames = sse_events(subscription)

        hub.publish_text("Bonjour")
        first = await asyncio.wait_for(frames.__anext__(), 1)
        assert first.startswith("id:")
        assert 'event:text\ndata:{"text":"Bonjour"}\n\n' in first

        hub.shutdown()
        last = await asyncio.wait_for(frames.__anext__(), 1)
        assert f"event:{EVENT_SHUTDOWN}" in last

        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()
        assert hub.client_count == 0

    @pytest.mark.asyncio
    async def test_disconnect_deregisters(self, hub):
        """Cancelling the generator task removes the subscriber."""
        subscription = hub.subscribe()

        async def consume():
            async for _ in sse_events(subscription):
                pass

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert hub.client_count == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert hub.client_count == 0


class TestKeepAlive:
    """Tests for the keep-alive ping loop."""

    @pytest.mark.asyncio
    async def test_pings_at_interval(self, hub, overlay):
        task = asyncio.create_task(keep_alive(hub, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert overlay.messages
        assert all(m.event == "ping" and m.data == {} for m in overlay.messages)

    def test_lifespan_broadcasts_shutdown(self, hub, overlay):
        app = create_app(hub, ServerSettings(keep_alive_seconds=60))
        with TestClient(app):
            pass
        assert overlay.messages[-1].event == EVENT_SHUTDOWN


class TestAsyncClient:
    """Tests through httpx's ASGI transport."""

    @pytest.mark.asyncio
    async def test_broadcast_via_async_client(self, hub, overlay):
        transport = ASGITransport(app=create_app(hub))
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.post("/broadcast", json={"text": "Hola"})
        assert response.status_code == 200
        assert overlay.messages[0].data == {"text": "Hola"}
