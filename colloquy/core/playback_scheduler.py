"""
PlaybackScheduler - gapless scheduling of inbound speech on the output device.

Chunks are placed back-to-back on the device clock in arrival order. When the
timeline has fallen behind the clock it is resynchronised to now plus a small
lead time. An interruption drops every scheduled chunk and resets the
timeline. The scheduler owns the output device for the session's lifetime.
"""

import itertools
from typing import Dict, Optional

import structlog

from colloquy.audio.convert import decode_pcm16
from colloquy.audio.devices import OutputDevice
from colloquy.core.models import ScheduledChunk, VolumeEnvelope

logger = structlog.get_logger(__name__)


class PlaybackScheduler:
    """
    Schedules decoded chunks on a single output device.

    Responsibilities:
    - Keep next_start_time on the device clock and advance it per chunk
    - Track active chunks and deregister them on completion or interruption
    - Drive volume.output: active level while any chunk is scheduled, 0 otherwise
    - Own the keep-alive tone and resume of the output device
    """

    def __init__(
        self,
        device: OutputDevice,
        envelope: VolumeEnvelope,
        lead_time_s: float = 0.05,
        source_rate: int = 24000,
        channels: int = 1,
        active_level: float = 0.5,
    ):
        self.device = device
        self.envelope = envelope
        self.lead_time_s = lead_time_s
        self.source_rate = source_rate
        self.channels = channels
        self.active_level = active_level
        self.next_start_time = 0.0
        self._chunks: Dict[int, ScheduledChunk] = {}
        self._ids = itertools.count(1)

    @property
    def active_count(self) -> int:
        return len(self._chunks)

    @property
    def active_chunks(self):
        return list(self._chunks.values())

    def schedule(self, pcm: bytes, sample_rate: Optional[int] = None, channels: Optional[int] = None) -> Optional[ScheduledChunk]:
        """Decode one inbound PCM16 chunk and place it on the timeline."""
        source_rate = sample_rate or self.source_rate
        samples = decode_pcm16(
            pcm,
            source_rate,
            channels=channels or self.channels,
            target_rate=self.device.sample_rate,
            target_channels=self.device.channels,
        )
        if len(samples) == 0:
            return None

        now = self.device.current_time()
        if self.next_start_time < now:
            self.next_start_time = now + self.lead_time_s

        duration = len(samples) / float(self.device.sample_rate)
        chunk_id = next(self._ids)
        chunk = ScheduledChunk(chunk_id=chunk_id, start_time=self.next_start_time, duration=duration)
        self._chunks[chunk_id] = chunk
        chunk.handle = self.device.play(samples, chunk.start_time, lambda: self._on_chunk_ended(chunk_id))
        self.next_start_time += duration
        self.envelope.output = self.active_level

        logger.debug(
            "Scheduled playback chunk",
            chunk_id=chunk_id,
            start_time=round(chunk.start_time, 4),
            duration=round(duration, 4),
            active=len(self._chunks),
        )
        return chunk

    def _on_chunk_ended(self, chunk_id: int) -> None:
        if self._chunks.pop(chunk_id, None) is None:
            return
        if not self._chunks:
            self.envelope.output = 0.0

    def interrupt(self) -> int:
        """Stop every active chunk now and reset the timeline. Returns how many were dropped."""
        dropped = list(self._chunks.values())
        self._chunks.clear()
        for chunk in dropped:
            try:
                self.device.stop(chunk.handle)
            except Exception as e:
                logger.debug("Failed to stop playback chunk", chunk_id=chunk.chunk_id, error=str(e))
        self.next_start_time = 0.0
        self.envelope.output = 0.0
        if dropped:
            logger.info("Playback interrupted", dropped_chunks=len(dropped))
        return len(dropped)

    def start_keepalive(self, frequency_hz: float, amplitude: float) -> None:
        self.device.start_keepalive(frequency_hz, amplitude)

    def stop_keepalive(self) -> None:
        self.device.stop_keepalive()

    def resume_if_suspended(self) -> bool:
        if self.device.is_suspended:
            self.device.resume()
            return True
        return False

    def close(self) -> None:
        """Drop pending audio, silence the keep-alive and release the device."""
        self.interrupt()
        try:
            self.device.stop_keepalive()
        finally:
            self.device.close()
