"""
Core data models for the Colloquy live session.

Plain dataclasses and enums shared by the supervisor, the capture pipeline,
the playback scheduler and the transport. Mutable records are owned by a
single component; SessionSnapshot is the immutable view handed to observers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SessionPhase(str, Enum):
    """Reconnection state machine phase."""
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    RETRYING = "retrying"
    FAILED = "failed"


class FrameDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass
class AudioFrame:
    """Buffer of little-endian PCM16 samples at a known rate."""
    data: bytes
    sample_rate: int
    direction: FrameDirection = FrameDirection.OUTBOUND
    channels: int = 1

    @property
    def encoding(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"

    @property
    def sample_count(self) -> int:
        return len(self.data) // (2 * max(1, self.channels))

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.sample_count / float(self.sample_rate)


@dataclass
class ScheduledChunk:
    """A decoded inbound buffer placed on the playback timeline."""
    chunk_id: int
    start_time: float
    duration: float
    handle: Any = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass
class VolumeEnvelope:
    """
    Shared volume cell: written from the audio thread, read by the display loop.

    Each field is replaced with a single assignment so readers never observe a
    half-written value; no multi-field atomicity is assumed.
    """
    input: float = 0.0
    output: float = 0.0

    def reset(self) -> None:
        self.input = 0.0
        self.output = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 5000

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds for zero-based attempt k: min(base * 2**k, cap)."""
        delay_ms = min(self.base_delay_ms * (2 ** max(0, attempt)), self.max_delay_ms)
        return delay_ms / 1000.0

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts


@dataclass
class Session:
    """The single logical call owned by the supervisor."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    phase: SessionPhase = SessionPhase.IDLE
    retry_count: int = 0
    should_retry: bool = False
    error_message: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only state published to presentation code."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    input_volume: float = 0.0
    output_volume: float = 0.0
    error_message: Optional[str] = None
    is_user_speaking: bool = False
    is_ai_speaking: bool = False
    retry_count: int = 0
    phase: SessionPhase = field(default=SessionPhase.IDLE)
