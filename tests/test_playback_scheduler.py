"""
Tests for PlaybackScheduler: gapless timeline, resync, interruption and
output volume tracking, driven by a manual-clock speaker.
"""

import numpy as np
import pytest

from colloquy.audio.convert import encode_pcm16
from colloquy.core.models import VolumeEnvelope
from colloquy.core.playback_scheduler import PlaybackScheduler

from fakes import ManualClockSpeaker

LEAD = 0.05


def pcm_ms(ms: int, rate: int = 24000) -> bytes:
    return encode_pcm16(np.zeros(int(rate * ms / 1000)))


@pytest.fixture
def speaker():
    return ManualClockSpeaker(sample_rate=24000)


@pytest.fixture
def envelope():
    return VolumeEnvelope()


@pytest.fixture
def scheduler(speaker, envelope):
    return PlaybackScheduler(speaker, envelope, lead_time_s=LEAD, source_rate=24000)


class TestTimeline:
    """Start time computation."""

    def test_first_chunk_starts_after_lead_time(self, scheduler, speaker):
        speaker.now = 2.0
        chunk = scheduler.schedule(pcm_ms(100))
        assert chunk.start_time == pytest.approx(2.0 + LEAD)
        assert chunk.duration == pytest.approx(0.1)
        assert scheduler.next_start_time == pytest.approx(2.0 + LEAD + 0.1)

    def test_back_to_back_without_gaps(self, scheduler, speaker):
        """Chunks arriving before the previous one ends queue exactly end to end."""
        speaker.now = 1.0
        chunks = []
        for ms in (120, 80, 200, 40):
            chunks.append(scheduler.schedule(pcm_ms(ms)))
            speaker.now += 0.01
        starts = [c.start_time for c in chunks]
        assert starts == sorted(starts)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_time == pytest.approx(prev.start_time + prev.duration)

    def test_resync_when_timeline_fell_behind(self, scheduler, speaker):
        first = scheduler.schedule(pcm_ms(100))
        speaker.advance(1.0)
        second = scheduler.schedule(pcm_ms(100))
        assert second.start_time == pytest.approx(speaker.now + LEAD)
        assert second.start_time > first.end_time

    def test_future_timeline_untouched(self, scheduler, speaker):
        scheduler.next_start_time = 5.0
        chunk = scheduler.schedule(pcm_ms(20))
        assert chunk.start_time == 5.0

    def test_chunk_rate_converted_to_device_rate(self, envelope):
        speaker = ManualClockSpeaker(sample_rate=48000)
        scheduler = PlaybackScheduler(speaker, envelope, lead_time_s=LEAD, source_rate=24000)
        chunk = scheduler.schedule(pcm_ms(100))
        assert chunk.duration == pytest.approx(0.1)
        assert speaker.played[0]["duration"] == pytest.approx(0.1)

    def test_empty_chunk_ignored(self, scheduler):
        assert scheduler.schedule(b"") is None
        assert scheduler.active_count == 0


class TestCompletion:
    """Deregistration and output volume."""

    def test_output_volume_follows_active_chunks(self, scheduler, speaker, envelope):
        # Clock at 0 has not passed the timeline, so the first chunk starts at 0
        scheduler.schedule(pcm_ms(100))
        scheduler.schedule(pcm_ms(100))
        assert envelope.output == 0.5
        speaker.advance(0.15)
        assert scheduler.active_count == 1
        assert envelope.output == 0.5
        speaker.advance(0.1)
        assert scheduler.active_count == 0
        assert envelope.output == 0.0


class TestInterruption:
    """Barge-in handling."""

    def test_interrupt_clears_three_chunks_and_resets_timeline(self, scheduler, speaker, envelope):
        speaker.now = 3.0
        for _ in range(3):
            scheduler.schedule(pcm_ms(100))
        assert scheduler.active_count == 3

        dropped = scheduler.interrupt()

        assert dropped == 3
        assert scheduler.active_count == 0
        assert scheduler.next_start_time == 0.0
        assert envelope.output == 0.0
        assert len(speaker.stopped) == 3
        assert speaker.voices == {}

        speaker.now = 3.02
        chunk = scheduler.schedule(pcm_ms(100))
        assert chunk.start_time == pytest.approx(3.02 + LEAD)

    def test_interrupt_with_nothing_scheduled(self, scheduler):
        assert scheduler.interrupt() == 0
        assert scheduler.next_start_time == 0.0

    def test_stopped_chunk_callbacks_are_inert(self, scheduler, speaker, envelope):
        chunk = scheduler.schedule(pcm_ms(100))
        callback = speaker.played[0]["on_ended"]
        scheduler.interrupt()
        scheduler.schedule(pcm_ms(100))
        # A late completion from the dropped chunk must not clear the new one
        callback()
        assert scheduler.active_count == 1
        assert envelope.output == 0.5
        assert chunk.chunk_id not in [c.chunk_id for c in scheduler.active_chunks]


class TestDeviceOwnership:
    """Keep-alive, resume and close."""

    def test_keepalive_and_close(self, scheduler, speaker):
        scheduler.start_keepalive(440.0, 0.0001)
        assert speaker.keepalive == (440.0, 0.0001)
        scheduler.schedule(pcm_ms(100))
        scheduler.close()
        assert speaker.keepalive is None
        assert speaker.closed is True
        assert scheduler.active_count == 0

    def test_resume_only_when_suspended(self, scheduler, speaker):
        assert scheduler.resume_if_suspended() is False
        speaker.suspended = True
        assert scheduler.resume_if_suspended() is True
        assert speaker.resume_calls == 1
