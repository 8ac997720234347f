"""
Google Gemini Live transport.

Opens a bidirectional WebSocket to the Gemini Live API, sends the session
setup (model, AUDIO response modality, persona as system instruction, voice),
streams PCM16 @ 16 kHz capture frames upstream and turns server messages into
tagged transport events:

- serverContent.interrupted            -> ChannelMessage(Interrupted())
- serverContent.modelTurn inlineData   -> ChannelMessage(AudioChunk(...))
- close frame / dropped connection     -> ChannelClosed(code, reason)
- unexpected receive failure           -> ChannelError(reason)

Retry decisions belong to the session supervisor; this transport never
reconnects on its own.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from structlog import get_logger
from prometheus_client import Gauge, Counter

from .base import (
    AudioChunk,
    ChannelClosed,
    ChannelError,
    ChannelMessage,
    ChannelOpened,
    EventHandler,
    Interrupted,
    MessagePayload,
    SessionTransport,
)
from ..config import GeminiLiveConfig
from ..core.errors import (
    ABNORMAL_CLOSE_CODE,
    CredentialError,
    TransportFailure,
    TransportNormalClose,
    classify_close,
    classify_connect_error,
    classify_error_reason,
)
from ..core.models import AudioFrame

logger = get_logger(__name__)

# Metrics
_GEMINI_LIVE_SESSIONS = Gauge(
    "colloquy_gemini_live_active_sessions",
    "Number of open Gemini Live channels",
)
_GEMINI_LIVE_AUDIO_SENT = Counter(
    "colloquy_gemini_live_audio_bytes_sent",
    "Total PCM16 bytes sent to Gemini Live",
)
_GEMINI_LIVE_AUDIO_RECEIVED = Counter(
    "colloquy_gemini_live_audio_bytes_received",
    "Total PCM16 bytes received from Gemini Live",
)

_CLOSE_CODE_MEANINGS = {
    1000: "Normal closure",
    1001: "Going away",
    1002: "Protocol error",
    1005: "No status received",
    1006: "Abnormal closure (no close frame)",
    1007: "Invalid frame payload data",
    1008: "Policy violation (likely auth/permission issue)",
    1009: "Message too big",
    1011: "Internal server error",
}


def build_setup_message(config: GeminiLiveConfig) -> Dict[str, Any]:
    """Session setup payload, sent once right after the socket opens."""
    generation_config = {
        "responseModalities": list(config.response_modalities),
        "speechConfig": {
            "voiceConfig": {
                "prebuiltVoiceConfig": {
                    "voiceName": config.voice_name,
                }
            }
        },
    }
    setup_msg: Dict[str, Any] = {
        "setup": {
            "model": f"models/{config.model}",
            "generation_config": generation_config,
        }
    }
    if config.instructions:
        setup_msg["setup"]["system_instruction"] = {
            "parts": [{"text": config.instructions}]
        }
    return setup_msg


def build_audio_message(frame: AudioFrame) -> Dict[str, Any]:
    return {
        "realtimeInput": {
            "mediaChunks": [
                {
                    "mimeType": frame.encoding,
                    "data": base64.b64encode(frame.data).decode("ascii"),
                }
            ]
        }
    }


def _rate_from_mime(mime_type: str, default: int) -> int:
    # "audio/pcm;rate=24000"
    for param in mime_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key == "rate" and value.isdigit():
            return int(value)
    return default


def parse_server_content(data: Dict[str, Any], default_rate: int) -> List[MessagePayload]:
    """Extract playback-relevant payloads from a serverContent message, in order."""
    content = data.get("serverContent") or {}
    payloads: List[MessagePayload] = []
    if content.get("interrupted"):
        payloads.append(Interrupted())
    for part in (content.get("modelTurn") or {}).get("parts", []):
        inline_data = part.get("inlineData")
        if not inline_data:
            continue
        mime_type = inline_data.get("mimeType", "")
        if not mime_type.startswith("audio/pcm"):
            continue
        pcm = base64.b64decode(inline_data.get("data", ""))
        if pcm:
            payloads.append(AudioChunk(data=pcm, sample_rate=_rate_from_mime(mime_type, default_rate)))
    return payloads


def _close_details(exc: Optional[ConnectionClosed], websocket=None) -> Tuple[int, str]:
    rcvd = getattr(exc, "rcvd", None) if exc is not None else None
    if rcvd is not None:
        return rcvd.code, rcvd.reason or ""
    if exc is None and websocket is not None:
        code = getattr(websocket, "close_code", None)
        if code is not None:
            return code, getattr(websocket, "close_reason", None) or ""
    return ABNORMAL_CLOSE_CODE, ""


class GeminiLiveTransport(SessionTransport):
    """
    One Gemini Live session over one WebSocket.

    Lifecycle:
    1. open() -> connects, starts the receive loop, sends setup, waits for setupComplete
    2. send_audio(frame) -> realtimeInput.mediaChunks, fire-and-forget
    3. receive loop -> ChannelMessage / ChannelClosed / ChannelError events
    4. close() -> idempotent shutdown, emits nothing
    """

    def __init__(self, config: GeminiLiveConfig, on_event: EventHandler, session_id: Optional[str] = None):
        super().__init__(on_event)
        if not config.api_key:
            raise CredentialError("API key is missing")
        self.config = config
        self.websocket = None
        self._session_id = session_id
        self._receive_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._setup_ack_event: Optional[asyncio.Event] = None
        self._pre_open_failure: Optional[TransportFailure] = None
        self._opened = False
        self._closing = False
        self._counted = False
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closing

    async def open(self) -> None:
        logger.info(
            "Connecting to Gemini Live",
            endpoint=self.config.endpoint,
            model=self.config.model,
            voice=self.config.voice_name,
        )
        ws_url = f"{self.config.endpoint}?key={self.config.api_key}"
        try:
            self.websocket = await websockets.connect(
                ws_url,
                max_size=self.config.max_message_bytes,
                open_timeout=self.config.connect_timeout_sec,
            )
        except Exception as e:
            failure = classify_connect_error(e)
            logger.warning(
                "Gemini Live connection failed",
                error=str(e),
                classified=type(failure).__name__,
            )
            raise failure from e

        _GEMINI_LIVE_SESSIONS.inc()
        self._counted = True

        if self._closing:
            # close() ran while the handshake was in flight
            await self.websocket.close()
            _GEMINI_LIVE_SESSIONS.dec()
            self._counted = False
            self.websocket = None
            raise TransportNormalClose(1000, "Closed during connect")

        # Receive loop must be running before setup so it catches setupComplete
        self._setup_ack_event = asyncio.Event()
        self._receive_task = asyncio.create_task(
            self._receive_loop(),
            name=f"gemini-live-receive-{self._session_id or 'session'}",
        )

        await self._send_message(build_setup_message(self.config))
        logger.info(
            "Sent Gemini Live setup",
            model=self.config.model,
            has_system_instruction=bool(self.config.instructions),
        )

        try:
            await asyncio.wait_for(self._setup_ack_event.wait(), timeout=self.config.setup_timeout_sec)
        except asyncio.TimeoutError as e:
            await self.close()
            raise classify_connect_error(e) from e

        if self._pre_open_failure is not None:
            failure = self._pre_open_failure
            await self.close()
            raise failure
        if not self._opened:
            raise TransportNormalClose(1000, "Closed during setup")

    async def _send_message(self, message: Dict[str, Any]) -> None:
        websocket = self.websocket
        if websocket is None or self._closing:
            return
        async with self._send_lock:
            try:
                await websocket.send(json.dumps(message))
            except Exception as e:
                # A closed or error event follows from the receive loop
                logger.debug("Failed to send message to Gemini Live", error=str(e))

    async def send_audio(self, frame: AudioFrame) -> None:
        if not self.is_open:
            return
        await self._send_message(build_audio_message(frame))
        _GEMINI_LIVE_AUDIO_SENT.inc(len(frame.data))

    async def _receive_loop(self) -> None:
        websocket = self.websocket
        if websocket is None:
            return
        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.error("Failed to decode Gemini Live message", error=str(e))
                    continue
                await self._handle_server_message(data)
        except ConnectionClosed as e:
            code, reason = _close_details(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Gemini Live receive loop error", error=str(e), exc_info=True)
            await self._finish(error=str(e) or type(e).__name__)
            return
        else:
            code, reason = _close_details(None, websocket)
        await self._finish(code=code, reason=reason)

    async def _finish(self, code: Optional[int] = None, reason: str = "", error: Optional[str] = None) -> None:
        if self._closing:
            return
        if error is None:
            logger.warning(
                "Gemini Live WebSocket closed",
                code=code,
                meaning=_CLOSE_CODE_MEANINGS.get(code, "Unknown"),
                reason=reason,
            )
        if not self._opened:
            self._pre_open_failure = classify_error_reason(error) if error else classify_close(code, reason)
            if self._setup_ack_event is not None:
                self._setup_ack_event.set()
            return
        if error is not None:
            await self.on_event(ChannelError(error))
        else:
            await self.on_event(ChannelClosed(code, reason))

    async def _handle_server_message(self, data: Dict[str, Any]) -> None:
        if "setupComplete" in data:
            await self._handle_setup_complete()
        elif "serverContent" in data:
            for payload in parse_server_content(data, self.config.output_sample_rate_hz):
                if isinstance(payload, AudioChunk):
                    _GEMINI_LIVE_AUDIO_RECEIVED.inc(len(payload.data))
                else:
                    logger.info("Gemini Live interrupted playback")
                await self.on_event(ChannelMessage(payload))
        elif "goAway" in data:
            logger.warning("Gemini Live server sending goAway", time_left=data["goAway"].get("timeLeft"))
        else:
            logger.debug("Ignoring Gemini Live message", keys=list(data.keys()))

    async def _handle_setup_complete(self) -> None:
        if self._opened:
            return
        self._opened = True
        self._opened_at = time.monotonic()
        if self._setup_ack_event is not None:
            self._setup_ack_event.set()
        logger.info("Gemini Live setup complete")
        await self.on_event(ChannelOpened())

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if not self._opened and self._setup_ack_event is not None:
            # Unblock a pending open()
            self._setup_ack_event.set()

        websocket = self.websocket
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug("Error closing Gemini Live WebSocket", error=str(e))

        # close() may be reached from an event handler running inside the receive loop
        task = self._receive_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._counted:
            _GEMINI_LIVE_SESSIONS.dec()
            self._counted = False
        self.websocket = None
        self._receive_task = None

        if self._opened_at is not None:
            logger.info(
                "Gemini Live session ended",
                duration_seconds=round(time.monotonic() - self._opened_at, 2),
            )
            self._opened_at = None
