"""
Structured Logging Configuration

This module configures structured logging using the 'structlog' library.
It sets up processors for adding timestamps, log levels, the live session id,
and renders logs in colorized console format (default) or JSON based on env.
"""

import os
import logging
import sys
import contextvars
import uuid
import time

import structlog
from structlog import dev as structlog_dev
from logging.handlers import RotatingFileHandler

# Context variable for the live session id (one per connect() attempt chain)
session_id_var = contextvars.ContextVar('session_id', default=None)

SERVICE_NAME = 'colloquy'


def get_session_id():
    """Get the current session id."""
    return session_id_var.get()


def set_session_id(value=None):
    """Set the session id, generating one when not provided."""
    if value is None:
        value = uuid.uuid4().hex[:12]
    session_id_var.set(value)
    return value


def add_session_id(logger, method_name, event_dict):
    """Add the session id to the log record."""
    session_id = get_session_id()
    if session_id and 'session_id' not in event_dict:
        event_dict['session_id'] = session_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service context to the log record."""
    event_dict['service'] = SERVICE_NAME
    component = event_dict.get('logger')
    if not component:
        try:
            component = getattr(getattr(logger, 'logger', None), 'name', None) or getattr(logger, 'name')
        except Exception:
            component = 'unknown'
    event_dict['component'] = component
    return event_dict


SENSITIVE_KEYS = {
    'api_key', 'apikey', 'api-key', 'api_keys',
    'token', 'access_token', 'refresh_token', 'auth_token', 'bearer',
    'password', 'passwd', 'pwd', 'pass',
    'authorization', 'auth',
    'credential', 'credentials', 'secret', 'secrets',
    'private_key', 'private-key', 'privatekey',
    'client_secret', 'client-secret', 'clientsecret',
}

_NORMALIZED_SENSITIVE_KEYS = {k.replace('_', '').replace('-', '') for k in SENSITIVE_KEYS}


def _redact_value(value):
    """Redact a sensitive value, preserving structure for debugging."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ''
        # Keep the first 2 chars so key families ("AI" for Google keys) stay recognizable
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (int, float)):
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _redact_value(v) if _is_sensitive_key(k) else v
                for k, v in value.items()}
    return "***REDACTED***"


def _is_sensitive_key(key) -> bool:
    key_normalized = str(key).lower().replace('_', '').replace('-', '')
    # Exact or suffix match only, so "passthrough" does not match "pass"
    for pattern in _NORMALIZED_SENSITIVE_KEYS:
        if key_normalized == pattern or key_normalized.endswith(pattern):
            return True
    return False


def _sanitize_dict(d):
    if not isinstance(d, dict):
        return d
    sanitized = {}
    for key, value in d.items():
        if _is_sensitive_key(key):
            sanitized[key] = _redact_value(value)
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [_sanitize_dict(v) if isinstance(v, dict) else v
                              for v in value]
        else:
            sanitized[key] = value
    return sanitized


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact sensitive information from log events.

    The Gemini API key travels in the WebSocket URL and in config dumps, so
    every event passes through here before rendering. Values under keys such
    as api_key, token, password or authorization are replaced with
    '***REDACTED***' while the rest of the event is preserved.
    """
    return _sanitize_dict(event_dict)


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="colloquy.log"):
    """
    Set up structured logging.

    Environment overrides (optional):
      - LOG_LEVEL: debug|info|warning|error|critical (default: INFO)
      - LOG_FORMAT: json|console (default: console)
      - LOG_COLOR:  0|1 (console only; default: 1)
      - LOG_TO_FILE: 0|1 (default: 0)
      - LOG_FILE_PATH: path (default: colloquy.log)
      - LOG_SHOW_TRACEBACKS: auto|always|never (default: auto, i.e. debug only)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level.upper()
    env_to_file = os.getenv("LOG_TO_FILE")
    if env_to_file is not None:
        log_to_file = env_to_file.strip().lower() in ("1", "true", "yes")
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    log_format = os.getenv("LOG_FORMAT", "console").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    log_level_upper = log_level.upper() if isinstance(log_level, str) else logging.getLevelName(log_level)
    tb_mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    if tb_mode == "always":
        show_tracebacks = True
    elif tb_mode == "never":
        show_tracebacks = False
    else:
        show_tracebacks = (log_level_upper == "DEBUG")

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        """Remove exc_info from event when tracebacks are disabled by policy."""
        if not show_tracebacks and event_dict.get("exc_info"):
            event_dict.pop("exc_info", None)
        return event_dict

    if isinstance(log_level, int):
        level_value = log_level
    else:
        level_value = getattr(logging, log_level_upper, logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_session_id,
            sanitize_secrets,
            suppress_exc_info_if_disabled,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer(colors=log_color) if log_format == "console" else structlog.processors.JSONRenderer()

    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        path = log_file_path
        if "{ts}" in path:
            path = path.replace("{ts}", time.strftime("%Y%m%d-%H%M%S"))
        try:
            dir_name = os.path.dirname(path)
            if dir_name:
                os.makedirs(dir_name, exist_ok=True)
            file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(processor_formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            get_logger(__name__).warning(
                "File logging disabled due to error; continuing with console only",
                error=str(e),
                configured_path=log_file_path,
            )

    # Reduce noisy third-party loggers
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('websockets.client').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
