"""Unit tests for the upstream session state machine using fakes."""

import asyncio

import pytest

from caption_relay.config import SessionConfig
from caption_relay.errors import ConnectionLost, RelayError, Unauthorized
from caption_relay.upstream.fake import FakeNegotiator, FakeTransport
from caption_relay.upstream.protocol import ConnectionClosed
from caption_relay.upstream.session import (
    ClosedEvent,
    ErrorEvent,
    SessionState,
    TextEvent,
    UpstreamSession,
)


async def next_event(session, timeout=1.0):
    return await asyncio.wait_for(session.events().__anext__(), timeout)


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return SessionConfig(api_key="key")


async def open_session(config, transport):
    session = UpstreamSession(config, FakeNegotiator(), transport)
    await session.negotiate()
    await session.connect()
    return session


class TestLifecycle:
    """Tests for state transitions."""

    @pytest.mark.asyncio
    async def test_happy_path(self, config, transport):
        session = UpstreamSession(config, FakeNegotiator(), transport)
        assert session.state == SessionState.IDLE

        url = await session.negotiate()
        assert url == "wss://fake.upstream/session/1"
        assert session.state == SessionState.NEGOTIATING

        await session.connect()
        assert session.state == SessionState.CONNECTED
        assert transport.last.url == url

        session.mark_streaming()
        assert session.state == SessionState.STREAMING

        await session.close()
        assert session.state == SessionState.CLOSED
        assert transport.last.close_code == 1000
        assert await next_event(session) == ClosedEvent(1000)

    @pytest.mark.asyncio
    async def test_negotiation_refused(self, config, transport):
        session = UpstreamSession(config, FakeNegotiator(Unauthorized()), transport)
        with pytest.raises(Unauthorized):
            await session.negotiate()
        assert session.state == SessionState.ERRORED
        assert transport.connections == []

    @pytest.mark.asyncio
    async def test_connect_failure(self, config):
        transport = FakeTransport(fail_with=ConnectionClosed(1006))
        session = UpstreamSession(config, FakeNegotiator(), transport)
        await session.negotiate()
        with pytest.raises(ConnectionLost) as exc_info:
            await session.connect()
        assert exc_info.value.code == 1006
        assert session.state == SessionState.ERRORED

    @pytest.mark.asyncio
    async def test_connect_os_error(self, config):
        session = UpstreamSession(config, FakeNegotiator(), FakeTransport(fail_with=OSError("dns")))
        await session.negotiate()
        with pytest.raises(ConnectionLost):
            await session.connect()

    @pytest.mark.asyncio
    async def test_negotiate_twice_rejected(self, config, transport):
        session = await open_session(config, transport)
        with pytest.raises(RelayError):
            await session.negotiate()
        await session.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config, transport):
        session = await open_session(config, transport)
        await session.close()
        await session.close()
        assert session.state == SessionState.CLOSED

    def test_mark_streaming_requires_connection(self, config, transport):
        session = UpstreamSession(config, FakeNegotiator(), transport)
        session.mark_streaming()
        assert session.state == SessionState.IDLE


class TestAudio:
    """Tests for outbound frames."""

    @pytest.mark.asyncio
    async def test_frames_reach_socket_in_order(self, config, transport):
        session = await open_session(config, transport)
        session.send(b"\x01\x00")
        session.send(b"\x02\x00")
        await wait_until(lambda: len(transport.last.sent) == 2)
        assert transport.last.sent == [b"\x01\x00", b"\x02\x00"]
        assert session.frames_sent == 2
        await session.close()

    def test_frames_dropped_before_open(self, config, transport):
        session = UpstreamSession(config, FakeNegotiator(), transport)
        session.send(b"\x00\x00")
        assert session.frames_dropped == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops(self, config, transport):
        session = UpstreamSession(config, FakeNegotiator(), transport, outbound_frames=2)
        await session.negotiate()
        await session.connect()
        # Nothing has been written yet: the writer task has not run
        for _ in range(3):
            session.send(b"\x00\x00")
        assert session.frames_dropped == 1
        await session.close()


class TestEvents:
    """Tests for inbound socket events."""

    @pytest.mark.asyncio
    async def test_final_transcript_becomes_text(self, config, transport):
        session = await open_session(config, transport)
        transport.last.push_transcript("partial", is_final=False)
        transport.last.push("garbage")
        transport.last.push({"type": "error", "data": {"message": "oops"}})
        transport.last.push_transcript("Bonjour")
        assert await next_event(session) == TextEvent("Bonjour")
        await session.close()

    @pytest.mark.asyncio
    async def test_translation_mode(self, transport):
        session = await open_session(SessionConfig(api_key="k", translate_to="en"), transport)
        transport.last.push_transcript("Bonjour")
        transport.last.push_translation("Hello")
        assert await next_event(session) == TextEvent("Hello")
        await session.close()

    @pytest.mark.asyncio
    async def test_abnormal_close(self, config, transport):
        session = await open_session(config, transport)
        transport.last.drop(1006)
        event = await next_event(session)
        assert event == ClosedEvent(1006)
        assert not event.normal
        assert session.state == SessionState.ERRORED

    @pytest.mark.asyncio
    async def test_normal_remote_close(self, config, transport):
        session = await open_session(config, transport)
        transport.last.drop(1000)
        assert (await next_event(session)).normal
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_only_one_terminal_event(self, config, transport):
        session = await open_session(config, transport)
        transport.last.drop(1006)
        await wait_until(lambda: session.state == SessionState.ERRORED)
        await session.close()

        events = [event async for event in session.events()]
        assert events == [ClosedEvent(1006)]

    @pytest.mark.asyncio
    async def test_socket_error_becomes_error_event(self, config):
        """Unexpected exceptions from the socket end the session with an error."""

        class BrokenConnection:
            async def send(self, frame):
                pass

            async def recv(self):
                raise RuntimeError("protocol violation")

            async def close(self, code=1000):
                pass

        class BrokenTransport:
            async def connect(self, url):
                return BrokenConnection()

        session = UpstreamSession(config, FakeNegotiator(), BrokenTransport())
        await session.negotiate()
        await session.connect()

        event = await next_event(session)
        assert isinstance(event, ErrorEvent)
        assert str(event.error) == "protocol violation"
        assert session.state == SessionState.ERRORED
        await session.close()
        assert session.state == SessionState.ERRORED
