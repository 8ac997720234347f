"""
CapturePipeline - microphone frames to wire-ready PCM16.

Runs per frame on the PortAudio callback thread: publish a coarse input level,
bring the frame to the 16 kHz wire rate, encode PCM16 and hand the send to the
event loop without waiting for it. At most one send is in flight;
a frame that arrives while the previous send is still pending is dropped, as
is a frame whose send fails.
"""

import asyncio
from concurrent.futures import Future
from typing import Optional

import numpy as np
from structlog import get_logger
from prometheus_client import Counter

from colloquy.audio.convert import average_amplitude, encode_pcm16, to_wire_rate
from colloquy.audio.devices import InputDevice
from colloquy.core.models import AudioFrame, FrameDirection, VolumeEnvelope
from colloquy.providers.base import SessionTransport

logger = get_logger(__name__)

_CAPTURE_FRAMES_DROPPED = Counter(
    "colloquy_capture_frames_dropped",
    "Capture frames dropped because they could not be sent",
)


class CapturePipeline:

    def __init__(
        self,
        microphone: InputDevice,
        transport: SessionTransport,
        envelope: VolumeEnvelope,
        wire_rate: int = 16000,
        volume_stride: int = 4,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.microphone = microphone
        self.transport = transport
        self.envelope = envelope
        self.wire_rate = wire_rate
        self.volume_stride = volume_stride
        self._loop = loop
        self._running = False
        self._pending: Optional[Future] = None
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._running = True
        self.microphone.start(self._on_frame)
        logger.info(
            "Capture pipeline started",
            capture_rate=self.microphone.sample_rate,
            wire_rate=self.wire_rate,
        )

    def _on_frame(self, samples: np.ndarray) -> None:
        # Audio thread: bounded numpy work plus a non-blocking hand-off only
        if not self._running:
            return
        self.envelope.input = average_amplitude(samples, self.volume_stride)
        pending = self._pending
        if pending is not None and not pending.done():
            # Previous send still stalled; this frame would only arrive late
            self._drop()
            return
        wire = to_wire_rate(samples, self.microphone.sample_rate, self.wire_rate)
        frame = AudioFrame(
            data=encode_pcm16(wire),
            sample_rate=self.wire_rate,
            direction=FrameDirection.OUTBOUND,
        )
        loop = self._loop
        if loop is None or loop.is_closed():
            self._drop()
            return
        try:
            self._pending = asyncio.run_coroutine_threadsafe(self._send(frame), loop)
        except RuntimeError:
            self._drop()

    async def _send(self, frame: AudioFrame) -> None:
        if not self._running:
            self._drop()
            return
        try:
            await self.transport.send_audio(frame)
            self.frames_sent += 1
        except Exception as e:
            self._drop()
            logger.debug("Dropped capture frame", error=str(e))

    def _drop(self) -> None:
        self.frames_dropped += 1
        _CAPTURE_FRAMES_DROPPED.inc()

    def resume_if_suspended(self) -> bool:
        if self._running and self.microphone.is_suspended:
            self.microphone.resume()
            return True
        return False

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.microphone.stop()
        self.envelope.input = 0.0
        logger.info(
            "Capture pipeline stopped",
            frames_sent=self.frames_sent,
            frames_dropped=self.frames_dropped,
        )

    def close(self) -> None:
        try:
            self.stop()
        finally:
            self.microphone.close()
