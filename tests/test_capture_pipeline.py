"""
Tests for CapturePipeline: volume publishing, wire-rate conversion, ordering
and drop-on-failure behaviour.
"""

import asyncio

import numpy as np
import pytest

from colloquy.core.capture_pipeline import CapturePipeline
from colloquy.core.models import FrameDirection, VolumeEnvelope
from colloquy.providers.base import SessionTransport

from fakes import VirtualMicrophone, sine


async def drain(iterations: int = 10) -> None:
    for _ in range(iterations):
        await asyncio.sleep(0)


class RecordingTransport(SessionTransport):

    def __init__(self, fail: bool = False, gate: asyncio.Event = None):
        super().__init__(on_event=None)
        self.fail = fail
        self.gate = gate
        self.frames = []

    async def open(self) -> None:
        return None

    async def send_audio(self, frame) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(frame)

    async def close(self) -> None:
        return None


def make_pipeline(capture_rate=16000, fail=False, gate=None):
    mic = VirtualMicrophone(sample_rate=capture_rate)
    transport = RecordingTransport(fail=fail, gate=gate)
    envelope = VolumeEnvelope()
    pipeline = CapturePipeline(mic, transport, envelope, wire_rate=16000, volume_stride=4)
    return pipeline, mic, transport, envelope


class TestCapturePipeline:

    @pytest.mark.asyncio
    async def test_frame_published_and_sent(self):
        """A sine frame raises the input level and reaches the transport as PCM16 @ 16 kHz."""
        pipeline, mic, transport, envelope = make_pipeline()
        pipeline.start()
        mic.emit(sine(440, 16000, 2048))
        assert envelope.input > 0.01
        await drain()
        assert len(transport.frames) == 1
        frame = transport.frames[0]
        assert frame.sample_rate == 16000
        assert frame.encoding == "audio/pcm;rate=16000"
        assert frame.direction == FrameDirection.OUTBOUND
        assert len(frame.data) == 2048 * 2
        assert frame.duration == pytest.approx(0.128)

    @pytest.mark.asyncio
    async def test_exact_multiple_is_decimated(self):
        pipeline, mic, transport, _ = make_pipeline(capture_rate=48000)
        pipeline.start()
        mic.emit(sine(440, 48000, 6144))
        await drain()
        assert len(transport.frames[0].data) == 2048 * 2

    @pytest.mark.asyncio
    async def test_non_integer_rate_is_interpolated(self):
        pipeline, mic, transport, _ = make_pipeline(capture_rate=44100)
        pipeline.start()
        mic.emit(sine(440, 44100, 4410))
        await drain()
        assert len(transport.frames[0].data) == 1600 * 2

    @pytest.mark.asyncio
    async def test_frames_sent_in_capture_order(self):
        pipeline, mic, transport, _ = make_pipeline()
        pipeline.start()
        for level in (0.1, 0.2, 0.3, 0.4):
            mic.emit(np.full(2048, level, dtype=np.float32))
            await drain()
        firsts = [int(np.frombuffer(f.data[:2], dtype="<i2")[0]) for f in transport.frames]
        assert firsts == sorted(firsts)
        assert len(firsts) == 4

    @pytest.mark.asyncio
    async def test_failed_send_drops_frame(self):
        pipeline, mic, transport, _ = make_pipeline(fail=True)
        pipeline.start()
        mic.emit(sine(440, 16000, 2048))
        mic.emit(sine(440, 16000, 2048))
        await drain()
        assert pipeline.frames_dropped == 2
        assert pipeline.frames_sent == 0

    @pytest.mark.asyncio
    async def test_stalled_send_drops_newer_frames(self):
        """While one send is stuck, later frames are dropped instead of queued."""
        gate = asyncio.Event()
        pipeline, mic, transport, envelope = make_pipeline(gate=gate)
        pipeline.start()
        for _ in range(20):
            mic.emit(sine(440, 16000, 2048))
            await drain(2)
        # Volume is still published for frames that are not sent
        assert envelope.input > 0.01
        assert pipeline.frames_dropped == 19

        gate.set()
        await drain()
        assert len(transport.frames) == 1
        assert pipeline.frames_sent == 1

        mic.emit(sine(440, 16000, 2048))
        await drain()
        assert pipeline.frames_sent == 2
        assert pipeline.frames_dropped == 19

    @pytest.mark.asyncio
    async def test_stop_resets_level_and_releases_mic(self):
        pipeline, mic, transport, envelope = make_pipeline()
        pipeline.start()
        mic.emit(sine(440, 16000, 2048))
        pipeline.close()
        assert envelope.input == 0.0
        assert mic.closed is True
        assert pipeline.running is False
        # Frames handed off before stop are dropped, not sent
        await drain()
        assert transport.frames == []

    @pytest.mark.asyncio
    async def test_resume_suspended_microphone(self):
        pipeline, mic, _, _ = make_pipeline()
        pipeline.start()
        assert pipeline.resume_if_suspended() is False
        mic.suspended = True
        assert pipeline.resume_if_suspended() is True
        assert mic.resume_calls == 1
