"""
SessionSupervisor - lifecycle, retry policy and observable state of the live session.

Reconnection state machine:

    Idle -> Connecting            connect()
    Connecting -> Live            transport opened
    Live/Connecting -> Retrying   abnormal close or connection failure, retries left
    Retrying -> Connecting        backoff elapsed
    Live/Connecting -> Failed     normal close, other close, credential error, retries exhausted
    any -> Idle                   disconnect()

Every exit path funnels through _cleanup(), which is idempotent and tolerates
partially acquired resources. A per-attempt epoch makes events from a
superseded transport (or a retry scheduled before a disconnect) inert.
"""

import asyncio
import contextlib
import functools
from typing import Callable, List, Optional

import structlog
from prometheus_client import Counter, Gauge

from colloquy.audio.devices import InputDevice, SoundDeviceBackend
from colloquy.config import AppConfig
from colloquy.core.capture_pipeline import CapturePipeline
from colloquy.core.errors import (
    CapabilityError,
    MicrophonePermissionError,
    TransportFailure,
    TransportNormalClose,
    classify_close,
    classify_error_reason,
)
from colloquy.core.models import (
    ConnectionStatus,
    RetryPolicy,
    Session,
    SessionPhase,
    SessionSnapshot,
    VolumeEnvelope,
)
from colloquy.core.playback_scheduler import PlaybackScheduler
from colloquy.logging_config import set_session_id
from colloquy.providers.base import (
    AudioChunk,
    ChannelClosed,
    ChannelError,
    ChannelMessage,
    ChannelOpened,
    Interrupted,
    SessionTransport,
    TransportEvent,
)
from colloquy.providers.gemini_live import GeminiLiveTransport

logger = structlog.get_logger(__name__)

_RECONNECT_ATTEMPTS = Counter(
    "colloquy_reconnect_attempts",
    "Automatic reconnection attempts scheduled after abnormal closures",
)
_SESSION_LIVE = Gauge(
    "colloquy_session_live",
    "1 while the live session is connected, 0 otherwise",
)

_BUSY_PHASES = (SessionPhase.CONNECTING, SessionPhase.LIVE, SessionPhase.RETRYING)

Listener = Callable[[SessionSnapshot], None]


class SessionSupervisor:
    """
    Owns the single live session.

    Public surface: connect(), disconnect(), state, subscribe().
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        backend=None,
        transport_factory: Optional[Callable[..., SessionTransport]] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.backend = backend or SoundDeviceBackend(config.audio.input_device, config.audio.output_device)
        self.transport_factory = transport_factory or self._default_transport
        self.retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_ms=config.retry.base_delay_ms,
            max_delay_ms=config.retry.max_delay_ms,
        )
        self._sleep = sleep

        self.session = Session()
        self.envelope = VolumeEnvelope()
        self._listeners: List[Listener] = []
        self._last_published: Optional[SessionSnapshot] = None
        self._epoch = 0

        # Per-attempt resources, all released by _cleanup()
        self._microphone: Optional[InputDevice] = None
        self._playback: Optional[PlaybackScheduler] = None
        self._capture: Optional[CapturePipeline] = None
        self._transport: Optional[SessionTransport] = None
        self._display_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

    def _default_transport(self, on_event, session_id=None) -> SessionTransport:
        return GeminiLiveTransport(self.config.gemini, on_event, session_id=session_id)

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SessionSnapshot:
        threshold = self.config.display.speaking_threshold
        input_volume = self.envelope.input
        output_volume = self.envelope.output
        return SessionSnapshot(
            status=self.session.status,
            input_volume=input_volume,
            output_volume=output_volume,
            error_message=self.session.error_message,
            is_user_speaking=input_volume > threshold,
            is_ai_speaking=output_volume > threshold,
            retry_count=self.session.retry_count,
            phase=self.session.phase,
        )

    @property
    def playback(self) -> Optional[PlaybackScheduler]:
        return self._playback

    @property
    def capture(self) -> Optional[CapturePipeline]:
        return self._capture

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.state
        if snapshot == self._last_published:
            return
        self._last_published = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("State listener failed", error=str(e), exc_info=True)

    def _set_status(self, phase: SessionPhase, status: ConnectionStatus) -> None:
        self.session.phase = phase
        self.session.status = status
        self._publish()

    # ------------------------------------------------------------- lifecycle

    async def connect(self) -> None:
        """
        Start a live session. No-op while one is connecting, live or retrying.

        Raises:
            CapabilityError: no usable audio devices; state stays Disconnected
            MicrophonePermissionError: microphone access denied; state becomes Error
        """
        if self.session.phase in _BUSY_PHASES:
            logger.debug("connect() ignored; session already active", phase=self.session.phase.value)
            return

        session_id = set_session_id()
        self.session = Session(session_id=session_id, should_retry=True)
        logger.info("Connect requested", model=self.config.gemini.model)

        try:
            self.backend.check_capability()
        except CapabilityError as e:
            self.session.should_retry = False
            self.session.error_message = e.user_message
            self._set_status(SessionPhase.IDLE, ConnectionStatus.DISCONNECTED)
            logger.error("Audio capability check failed", error=str(e))
            raise

        await self._attempt()

    async def disconnect(self) -> None:
        """Terminal stop. Clears retry intent before tearing anything down."""
        self.session.should_retry = False
        self._epoch += 1
        if self.session.phase == SessionPhase.IDLE and not self._holds_resources():
            return
        logger.info("Disconnect requested", phase=self.session.phase.value)
        await self._cleanup()
        self.session.retry_count = 0
        self.session.error_message = None
        self._set_status(SessionPhase.IDLE, ConnectionStatus.DISCONNECTED)

    def _holds_resources(self) -> bool:
        return any(
            resource is not None
            for resource in (
                self._microphone, self._playback, self._capture, self._transport,
                self._display_task, self._heartbeat_task, self._retry_task,
            )
        )

    async def _attempt(self) -> None:
        self._epoch += 1
        epoch = self._epoch
        self._set_status(SessionPhase.CONNECTING, ConnectionStatus.CONNECTING)
        audio = self.config.audio

        try:
            speaker = self.backend.open_speaker(audio.playback_sample_rate_hz)
            self._playback = PlaybackScheduler(
                speaker,
                self.envelope,
                lead_time_s=audio.lead_time_ms / 1000.0,
                source_rate=self.config.gemini.output_sample_rate_hz,
                active_level=audio.output_active_level,
            )
            self._microphone = self.backend.open_microphone(audio.capture_sample_rate_hz, audio.frame_size)
            self._transport = self.transport_factory(
                functools.partial(self._handle_transport_event, epoch=epoch),
                session_id=self.session.session_id,
            )
            self._capture = CapturePipeline(
                self._microphone,
                self._transport,
                self.envelope,
                wire_rate=self.config.gemini.input_sample_rate_hz,
                volume_stride=audio.volume_stride,
            )
            await self._transport.open()
        except MicrophonePermissionError as e:
            logger.error("Microphone access denied", error=str(e))
            await self._cleanup()
            self._fail(e.user_message)
            raise
        except TransportFailure as e:
            if epoch != self._epoch:
                return
            await self._on_transport_failure(e)
        except Exception as e:
            if epoch != self._epoch:
                raise
            logger.error("Failed to start live session", error=str(e), exc_info=True)
            await self._cleanup()
            self._fail(f"Failed to start session: {e}")
            raise

    async def _handle_transport_event(self, event: TransportEvent, epoch: int) -> None:
        if epoch != self._epoch:
            logger.debug("Ignoring event from superseded transport", event_type=type(event).__name__)
            return
        if isinstance(event, ChannelOpened):
            self._on_opened()
        elif isinstance(event, ChannelMessage):
            payload = event.payload
            if self._playback is None:
                return
            if isinstance(payload, Interrupted):
                self._playback.interrupt()
            elif isinstance(payload, AudioChunk):
                self._playback.schedule(payload.data, payload.sample_rate, payload.channels)
        elif isinstance(event, ChannelClosed):
            await self._on_transport_failure(classify_close(event.code, event.reason))
        elif isinstance(event, ChannelError):
            await self._on_transport_failure(classify_error_reason(event.reason))

    def _on_opened(self) -> None:
        self.session.retry_count = 0
        self.session.error_message = None
        self._set_status(SessionPhase.LIVE, ConnectionStatus.CONNECTED)
        _SESSION_LIVE.set(1)
        logger.info("Live session connected")

        audio = self.config.audio
        if self._capture is not None:
            self._capture.start()
        if self._playback is not None:
            self._playback.start_keepalive(audio.keepalive_tone_hz, audio.keepalive_amplitude)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="colloquy-heartbeat")
        self._display_task = asyncio.create_task(self._display_loop(), name="colloquy-display")

    async def _on_transport_failure(self, failure: TransportFailure) -> None:
        logger.warning(
            "Transport failure",
            failure=type(failure).__name__,
            code=failure.code,
            reason=failure.reason,
            retryable=failure.retryable,
            retry_count=self.session.retry_count,
        )
        epoch = self._epoch
        await self._cleanup()
        if epoch != self._epoch:
            # disconnect() ran while the transport was closing; Idle stands
            logger.debug("Transport failure superseded during teardown", failure=type(failure).__name__)
            return

        if isinstance(failure, TransportNormalClose):
            self.session.should_retry = False
            self.session.error_message = None
            self._set_status(SessionPhase.FAILED, ConnectionStatus.DISCONNECTED)
            return

        if (
            failure.retryable
            and self.session.should_retry
            and self.retry_policy.should_retry(self.session.retry_count)
        ):
            self._schedule_retry()
            return

        self._fail(failure.user_message)

    def _schedule_retry(self) -> None:
        delay = self.retry_policy.delay_for(self.session.retry_count)
        self.session.retry_count += 1
        _RECONNECT_ATTEMPTS.inc()
        logger.info(
            "Scheduling reconnect",
            attempt=self.session.retry_count,
            max_attempts=self.retry_policy.max_attempts,
            delay_sec=delay,
        )
        # Status stays Connecting while retrying
        self._set_status(SessionPhase.RETRYING, ConnectionStatus.CONNECTING)
        self._retry_task = asyncio.create_task(self._retry_after(delay, self._epoch), name="colloquy-retry")

    async def _retry_after(self, delay: float, epoch: int) -> None:
        await self._sleep(delay)
        if epoch != self._epoch or not self.session.should_retry:
            return
        self._retry_task = None
        try:
            await self._attempt()
        except Exception as e:
            # State already reflects the failure
            logger.error("Reconnect attempt failed", error=str(e))

    def _fail(self, message: Optional[str]) -> None:
        self.session.should_retry = False
        self.session.error_message = message or None
        status = ConnectionStatus.ERROR if message else ConnectionStatus.DISCONNECTED
        self._set_status(SessionPhase.FAILED, status)
        logger.error("Live session failed", error_message=message)

    # ------------------------------------------------------- periodic tasks

    async def _heartbeat_loop(self) -> None:
        interval = self.config.audio.heartbeat_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                if self._playback is not None and self._playback.resume_if_suspended():
                    logger.info("Heartbeat resumed suspended output device")
                if self._capture is not None and self._capture.resume_if_suspended():
                    logger.info("Heartbeat resumed suspended input device")
            except Exception as e:
                logger.warning("Heartbeat failed to resume audio device", error=str(e))

    async def _display_loop(self) -> None:
        interval = 1.0 / max(1.0, self.config.display.refresh_hz)
        while True:
            self._publish()
            await asyncio.sleep(interval)

    # --------------------------------------------------------------- teardown

    async def _cleanup(self) -> None:
        """Release every per-attempt resource. Safe to call repeatedly."""
        current = asyncio.current_task()
        for attr in ("_display_task", "_heartbeat_task", "_retry_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        capture, self._capture = self._capture, None
        microphone, self._microphone = self._microphone, None
        try:
            if capture is not None:
                capture.close()
            elif microphone is not None:
                microphone.close()
        except Exception as e:
            logger.warning("Error releasing microphone", error=str(e))

        playback, self._playback = self._playback, None
        if playback is not None:
            try:
                playback.close()
            except Exception as e:
                logger.warning("Error releasing output device", error=str(e))

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("Error closing transport", error=str(e))

        self.envelope.reset()
        _SESSION_LIVE.set(0)
