"""
Local audio devices backed by PortAudio (sounddevice).

The session core talks to the abstract InputDevice/OutputDevice interfaces so
tests can drive it with virtual devices. The sounddevice implementations keep
their callbacks bounded: the microphone hands each frame to a consumer, the
speaker mixes scheduled voices plus the keep-alive tone into the output
buffer. Completion notifications are marshalled back onto the event loop.
"""

import asyncio
import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import numpy as np
from structlog import get_logger

from colloquy.core.errors import CapabilityError, MicrophonePermissionError

logger = get_logger(__name__)

DeviceSelector = Optional[Union[int, str]]
FrameCallback = Callable[[np.ndarray], None]


class InputDevice(ABC):
    """A capture device delivering fixed-size mono float32 frames."""

    sample_rate: int

    @abstractmethod
    def start(self, on_frame: FrameCallback) -> None:
        """Begin capture; on_frame runs on the audio thread and must not block."""

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_suspended(self) -> bool:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...


class OutputDevice(ABC):
    """A playback device with its own clock and sample-accurate start times."""

    sample_rate: int
    channels: int

    @abstractmethod
    def current_time(self) -> float:
        """Device clock in seconds."""

    @abstractmethod
    def play(self, samples: np.ndarray, start_time: float, on_ended: Callable[[], None]):
        """
        Schedule samples shaped (frames, channels) at start_time on the device clock.

        on_ended is invoked on the event loop once the last frame has been
        rendered. Returns an opaque handle accepted by stop().
        """

    @abstractmethod
    def stop(self, handle) -> None:
        """Drop a scheduled voice immediately. on_ended is not invoked."""

    @abstractmethod
    def start_keepalive(self, frequency_hz: float, amplitude: float) -> None:
        ...

    @abstractmethod
    def stop_keepalive(self) -> None:
        ...

    @property
    @abstractmethod
    def is_suspended(self) -> bool:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def _import_sounddevice():
    """Import sounddevice; a missing PortAudio library is a capability failure."""
    try:
        import sounddevice
    except (ImportError, OSError) as exc:
        raise CapabilityError(f"PortAudio is unavailable: {exc}") from exc
    return sounddevice


class SoundDeviceMicrophone(InputDevice):

    def __init__(self, sd, sample_rate: int, frame_size: int, device: DeviceSelector = None):
        self._sd = sd
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self._device = device
        self._on_frame: Optional[FrameCallback] = None
        self._started = False
        try:
            self._stream = sd.InputStream(
                samplerate=sample_rate,
                blocksize=frame_size,
                channels=1,
                dtype="float32",
                device=device,
                callback=self._callback,
            )
        except sd.PortAudioError as exc:
            raise MicrophonePermissionError(f"Could not open microphone: {exc}") from exc

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("Microphone stream status", status=str(status))
        consumer = self._on_frame
        if consumer is None:
            return
        consumer(indata[:, 0].copy())

    def start(self, on_frame: FrameCallback) -> None:
        self._on_frame = on_frame
        self._stream.start()
        self._started = True
        logger.info("Microphone capture started", sample_rate=self.sample_rate, frame_size=self.frame_size)

    def stop(self) -> None:
        self._on_frame = None
        self._started = False
        if self._stream.active:
            self._stream.stop()

    def close(self) -> None:
        self._on_frame = None
        self._started = False
        self._stream.close()

    @property
    def is_suspended(self) -> bool:
        return self._started and not self._stream.active

    def resume(self) -> None:
        logger.info("Resuming suspended microphone stream")
        self._stream.start()


@dataclass
class _Voice:
    samples: np.ndarray
    start_frame: int
    on_ended: Callable[[], None]

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)


class SoundDeviceSpeaker(OutputDevice):
    """
    Output stream that mixes scheduled voices in its callback.

    The device clock is the number of frames rendered so far divided by the
    sample rate, so start times line up exactly with buffer boundaries.
    """

    def __init__(self, sd, sample_rate: int, channels: int = 1, device: DeviceSelector = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self._sd = sd
        self.sample_rate = sample_rate
        self.channels = channels
        self._loop = loop or asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._voices: Dict[int, _Voice] = {}
        self._ids = itertools.count(1)
        self._frames_rendered = 0
        self._tone_hz = 0.0
        self._tone_amplitude = 0.0
        self._tone_phase = 0.0
        self._stream = sd.OutputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            device=device,
            callback=self._callback,
        )
        self._stream.start()
        logger.info("Speaker stream opened", sample_rate=sample_rate, channels=channels)

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug("Speaker stream status", status=str(status))
        outdata.fill(0)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            finished = []
            for voice_id, voice in self._voices.items():
                if voice.start_frame >= block_end:
                    continue
                lo = max(voice.start_frame, block_start)
                hi = min(voice.end_frame, block_end)
                if hi > lo:
                    outdata[lo - block_start:hi - block_start] += voice.samples[lo - voice.start_frame:hi - voice.start_frame]
                if voice.end_frame <= block_end:
                    finished.append(voice_id)
            ended = [self._voices.pop(voice_id).on_ended for voice_id in finished]
            self._frames_rendered = block_end
            tone_hz = self._tone_hz
            amplitude = self._tone_amplitude
        if amplitude > 0.0:
            step = 2.0 * np.pi * tone_hz / self.sample_rate
            phases = self._tone_phase + step * np.arange(frames)
            outdata += (amplitude * np.sin(phases)).astype(np.float32).reshape(-1, 1)
            self._tone_phase = float((phases[-1] + step) % (2.0 * np.pi)) if frames else self._tone_phase
        for on_ended in ended:
            self._loop.call_soon_threadsafe(on_ended)

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def play(self, samples: np.ndarray, start_time: float, on_ended: Callable[[], None]):
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        if samples.shape[1] != self.channels:
            samples = np.repeat(samples[:, :1], self.channels, axis=1)
        voice_id = next(self._ids)
        with self._lock:
            start_frame = max(int(round(start_time * self.sample_rate)), self._frames_rendered)
            self._voices[voice_id] = _Voice(samples=samples, start_frame=start_frame, on_ended=on_ended)
        return voice_id

    def stop(self, handle) -> None:
        with self._lock:
            self._voices.pop(handle, None)

    def start_keepalive(self, frequency_hz: float, amplitude: float) -> None:
        with self._lock:
            self._tone_hz = frequency_hz
            self._tone_amplitude = amplitude

    def stop_keepalive(self) -> None:
        with self._lock:
            self._tone_amplitude = 0.0

    @property
    def is_suspended(self) -> bool:
        return not self._stream.active

    def resume(self) -> None:
        logger.info("Resuming suspended speaker stream")
        self._stream.start()

    def close(self) -> None:
        with self._lock:
            self._voices.clear()
            self._tone_amplitude = 0.0
        self._stream.close()


class SoundDeviceBackend:
    """Factory for PortAudio devices; the supervisor only sees the interfaces."""

    def __init__(self, input_device: DeviceSelector = None, output_device: DeviceSelector = None):
        self.input_device = input_device
        self.output_device = output_device
        self._sd = None

    def check_capability(self) -> None:
        """Raise CapabilityError when there is no usable capture and playback device."""
        sd = _import_sounddevice()
        try:
            sd.query_devices(self.input_device, kind="input")
            sd.query_devices(self.output_device, kind="output")
        except (sd.PortAudioError, ValueError) as exc:
            raise CapabilityError(f"No usable audio device: {exc}") from exc
        self._sd = sd

    def open_microphone(self, sample_rate: int, frame_size: int) -> InputDevice:
        sd = self._sd or _import_sounddevice()
        return SoundDeviceMicrophone(sd, sample_rate, frame_size, device=self.input_device)

    def open_speaker(self, sample_rate: int, channels: int = 1) -> OutputDevice:
        sd = self._sd or _import_sounddevice()
        return SoundDeviceSpeaker(sd, sample_rate, channels=channels, device=self.output_device)
