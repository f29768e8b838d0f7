"""Unit tests for the capture pipeline and the audio-thread bridge."""

import asyncio
import threading

import numpy as np
import pytest

from caption_relay.capture.fake import FakeSource
from caption_relay.capture.pipeline import CapturePipeline, FrameBridge, describe_capture_error
from caption_relay.errors import DeviceNotFound, PermissionDenied


class TestCapturePipeline:
    """Tests for acquiring a source and producing frames."""

    def test_block_becomes_pcm16_frame(self):
        """100ms at 48kHz becomes 1600 samples of 16kHz PCM16."""
        source = FakeSource(sample_rate=48000)
        frames = []
        pipeline = CapturePipeline(source)
        pipeline.acquire("mic-1", frames.append)

        source.feed(np.full(4800, 0.25, dtype=np.float32))

        assert source.device_id == "mic-1"
        assert len(frames) == 1
        assert len(frames[0]) == 3200
        samples = np.frombuffer(frames[0], dtype="<i2")
        assert np.all(samples == 8192)
        assert pipeline.frames_emitted == 1

    def test_acquire_failure_propagates(self):
        """Open errors reach the caller and leave the pipeline inactive."""
        pipeline = CapturePipeline(FakeSource(error=PermissionDenied()))
        with pytest.raises(PermissionDenied):
            pipeline.acquire(None, lambda frame: None)
        assert not pipeline.active

    def test_release_is_idempotent(self):
        source = FakeSource()
        pipeline = CapturePipeline(source)
        pipeline.release()
        pipeline.acquire(None, lambda frame: None)
        pipeline.release()
        pipeline.release()
        assert not pipeline.active
        assert not source.is_open

    def test_no_frames_after_release(self):
        source = FakeSource()
        frames = []
        pipeline = CapturePipeline(source)
        pipeline.acquire(None, frames.append)
        on_block = source._on_block
        pipeline.release()

        # A late callback from the audio thread is ignored
        on_block(np.zeros(4800, dtype=np.float32))
        assert frames == []

    def test_frame_callback_errors_are_contained(self):
        source = FakeSource()
        pipeline = CapturePipeline(source)

        def explode(frame):
            raise RuntimeError("consumer failed")

        pipeline.acquire(None, explode)
        source.feed(np.zeros(4800, dtype=np.float32))
        assert pipeline.frames_emitted == 1

    def test_tiny_block_emits_nothing(self):
        source = FakeSource(sample_rate=48000)
        frames = []
        CapturePipeline(source).acquire(None, frames.append)
        source.feed(np.zeros(2, dtype=np.float32))
        assert frames == []


class TestDescribeCaptureError:
    def test_typed_errors_use_guidance(self):
        assert "denied" in describe_capture_error(PermissionDenied("EPERM"))
        assert "No microphone" in describe_capture_error(DeviceNotFound())

    def test_other_errors_use_their_text(self):
        assert describe_capture_error(RuntimeError("boom")) == "boom"


class TestFrameBridge:
    """Tests for handing frames to the event loop."""

    @pytest.mark.asyncio
    async def test_delivers_on_loop(self):
        delivered = []
        bridge = FrameBridge(asyncio.get_running_loop(), delivered.append)
        bridge(b"a")
        bridge(b"b")
        assert delivered == []

        await asyncio.sleep(0)
        assert delivered == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_drops_oldest_when_behind(self):
        delivered = []
        bridge = FrameBridge(asyncio.get_running_loop(), delivered.append, max_frames=2)
        for frame in (b"1", b"2", b"3", b"4"):
            bridge(frame)
        await asyncio.sleep(0)
        assert delivered == [b"3", b"4"]
        assert bridge.dropped == 2

    @pytest.mark.asyncio
    async def test_closed_bridge_delivers_nothing(self):
        delivered = []
        bridge = FrameBridge(asyncio.get_running_loop(), delivered.append)
        bridge(b"a")
        bridge.close()
        bridge(b"b")
        await asyncio.sleep(0)
        assert delivered == []

    @pytest.mark.asyncio
    async def test_from_audio_thread(self):
        """Frames produced on another thread arrive in order on the loop."""
        loop = asyncio.get_running_loop()
        delivered = []
        bridge = FrameBridge(loop, delivered.append, max_frames=1000)

        def produce():
            for i in range(200):
                bridge(i.to_bytes(2, "little"))

        thread = threading.Thread(target=produce)
        thread.start()
        await loop.run_in_executor(None, thread.join)
        for _ in range(100):
            if len(delivered) == 200:
                break
            await asyncio.sleep(0.005)

        assert [int.from_bytes(f, "little") for f in delivered] == list(range(200))
