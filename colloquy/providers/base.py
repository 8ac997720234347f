"""
Transport interface and the tagged events it emits.

A transport owns one duplex channel to the remote conversational service.
Every inbound occurrence is delivered through a single async handler as one
of ChannelOpened, ChannelMessage, ChannelClosed or ChannelError, so consumers
can dispatch exhaustively on the event type.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from colloquy.core.models import AudioFrame


@dataclass(frozen=True)
class Interrupted:
    """The remote side barged in; scheduled playback must stop."""


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    sample_rate: int
    channels: int = 1


MessagePayload = Union[Interrupted, AudioChunk]


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelMessage:
    payload: MessagePayload


@dataclass(frozen=True)
class ChannelClosed:
    code: Optional[int]
    reason: str = ""


@dataclass(frozen=True)
class ChannelError:
    reason: str


TransportEvent = Union[ChannelOpened, ChannelMessage, ChannelClosed, ChannelError]
EventHandler = Callable[[TransportEvent], Awaitable[None]]


class SessionTransport(ABC):
    """Duplex audio channel. Never retries on its own."""

    def __init__(self, on_event: EventHandler):
        self.on_event = on_event

    @abstractmethod
    async def open(self) -> None:
        """
        Open the channel and complete the session handshake.

        Emits ChannelOpened on success. Failures before that point are raised
        as TransportFailure subclasses instead of being emitted.
        """

    @abstractmethod
    async def send_audio(self, frame: AudioFrame) -> None:
        """Fire-and-forget send; failures are logged and swallowed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call repeatedly and before open()."""
