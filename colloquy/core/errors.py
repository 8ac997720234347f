"""
Error taxonomy for the live session.

Device and permission failures are terminal. Transport failures are classified
first (see classify_close / classify_connect_error) and then either retried by
the supervisor or surfaced to the user as a single readable message.
"""

import asyncio
from typing import Optional

from websockets.exceptions import InvalidStatus

NORMAL_CLOSE_CODES = frozenset({1000, 1005})
ABNORMAL_CLOSE_CODE = 1006

NETWORK_LOST_MESSAGE = "Connection lost. Please check your internet connection."
INVALID_API_KEY_MESSAGE = "Invalid API Key."
MICROPHONE_BLOCKED_MESSAGE = "Microphone access blocked."
CAPABILITY_MESSAGE = "Audio input is not supported on this system."

_CREDENTIAL_MARKER = "api key"


class SessionError(Exception):
    """Base class for failures that end up in front of the user."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message if user_message is not None else message


class CapabilityError(SessionError):
    """The platform has no usable audio capture or playback path."""

    def __init__(self, message: str = CAPABILITY_MESSAGE):
        super().__init__(message, user_message=CAPABILITY_MESSAGE)


class MicrophonePermissionError(SessionError, PermissionError):
    """Microphone access was denied by the OS or the device is held elsewhere."""

    def __init__(self, message: str = MICROPHONE_BLOCKED_MESSAGE):
        super().__init__(message, user_message=MICROPHONE_BLOCKED_MESSAGE)


class TransportFailure(SessionError):
    """A failure of the duplex channel. Only retryable ones are retried."""

    retryable = False

    def __init__(self, message: str, user_message: Optional[str] = None,
                 code: Optional[int] = None, reason: str = ""):
        super().__init__(message, user_message=user_message)
        self.code = code
        self.reason = reason


class TransportAbnormalClose(TransportFailure):
    retryable = True

    def __init__(self, code: int = ABNORMAL_CLOSE_CODE, reason: str = ""):
        super().__init__(
            f"Channel closed abnormally (code {code})",
            user_message=NETWORK_LOST_MESSAGE,
            code=code,
            reason=reason,
        )


class TransportNormalClose(TransportFailure):
    """Clean close handshake; not an error and carries no user message."""

    def __init__(self, code: int = 1000, reason: str = ""):
        super().__init__(f"Channel closed normally (code {code})", user_message="", code=code, reason=reason)


class TransportOtherClose(TransportFailure):
    def __init__(self, code: int, reason: str = ""):
        super().__init__(
            f"Channel closed by server (code {code}): {reason}".rstrip(": "),
            user_message=f"Session disconnected. Code: {code}.",
            code=code,
            reason=reason,
        )


class TransportError(TransportFailure):
    def __init__(self, reason: str):
        super().__init__(f"Transport error: {reason}", user_message=f"Connection error: {reason}", reason=reason)


class CredentialError(TransportFailure):
    def __init__(self, reason: str = "API key rejected", code: Optional[int] = None):
        super().__init__(
            f"Credential rejected: {reason}",
            user_message=INVALID_API_KEY_MESSAGE,
            code=code,
            reason=reason,
        )


def is_credential_reason(reason: Optional[str]) -> bool:
    return bool(reason) and _CREDENTIAL_MARKER in reason.lower()


def classify_close(code: Optional[int], reason: str = "") -> TransportFailure:
    """Map a WebSocket close code and reason onto the failure taxonomy."""
    reason = reason or ""
    if is_credential_reason(reason):
        return CredentialError(reason, code=code)
    if code is None or code == ABNORMAL_CLOSE_CODE:
        return TransportAbnormalClose(ABNORMAL_CLOSE_CODE, reason)
    if code in NORMAL_CLOSE_CODES:
        return TransportNormalClose(code, reason)
    return TransportOtherClose(code, reason)


def classify_connect_error(exc: BaseException) -> TransportFailure:
    """
    Classify an exception raised while opening the channel.

    Network level failures (DNS, refused, reset, timeouts) count as connection
    failures and are retryable like an abnormal close. HTTP rejections of the
    upgrade surface as server disconnects, except 401/403 and 400 responses
    whose body mentions the API key.
    """
    if isinstance(exc, TransportFailure):
        return exc
    if isinstance(exc, InvalidStatus):
        status = exc.response.status_code
        body = (exc.response.body or b"").decode("utf-8", errors="replace")
        if status in (401, 403) or (status == 400 and is_credential_reason(body)):
            return CredentialError(body or f"HTTP {status}", code=status)
        return TransportOtherClose(status, body)
    if isinstance(exc, (OSError, asyncio.TimeoutError)):
        return TransportAbnormalClose(ABNORMAL_CLOSE_CODE, str(exc) or type(exc).__name__)
    return classify_error_reason(str(exc) or type(exc).__name__)


def classify_error_reason(reason: str) -> TransportFailure:
    """Classify a transport-level error event that carries only a reason string."""
    if is_credential_reason(reason):
        return CredentialError(reason)
    return TransportError(reason)
