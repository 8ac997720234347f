"""
Configuration for the Colloquy live voice client.

Pydantic v2 models for every tunable of the duplex audio session, plus
load_config() which runs the YAML -> credentials -> defaults -> validation
pipeline implemented by the helper modules in this package.
"""

import os
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from colloquy.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from colloquy.config.security import inject_gemini_credentials
from colloquy.config.defaults import apply_audio_defaults, apply_logging_defaults

GEMINI_LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

# Wire formats fixed by the remote service
WIRE_INPUT_RATE_HZ = 16000
WIRE_OUTPUT_RATE_HZ = 24000


class GeminiLiveConfig(BaseModel):
    api_key: Optional[str] = None
    endpoint: str = Field(default=GEMINI_LIVE_ENDPOINT)
    model: str = Field(default="gemini-2.0-flash-exp")
    response_modalities: List[str] = Field(default_factory=lambda: ["AUDIO"])
    voice_name: str = Field(default="Fenrir")
    instructions: Optional[str] = None
    input_sample_rate_hz: int = Field(default=WIRE_INPUT_RATE_HZ)
    output_sample_rate_hz: int = Field(default=WIRE_OUTPUT_RATE_HZ)
    connect_timeout_sec: float = Field(default=10.0)
    setup_timeout_sec: float = Field(default=5.0)
    max_message_bytes: int = Field(default=10 * 1024 * 1024)


class AudioConfig(BaseModel):
    input_device: Optional[Union[int, str]] = None
    output_device: Optional[Union[int, str]] = None
    capture_sample_rate_hz: int = Field(default=16000)
    playback_sample_rate_hz: int = Field(default=WIRE_OUTPUT_RATE_HZ)
    frame_size: int = Field(default=2048)  # ~128 ms at 16 kHz
    volume_stride: int = Field(default=4)
    lead_time_ms: int = Field(default=50)
    output_active_level: float = Field(default=0.5)
    keepalive_tone_hz: float = Field(default=440.0)
    keepalive_amplitude: float = Field(default=0.0001)
    heartbeat_interval_sec: float = Field(default=1.0)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3)
    base_delay_ms: int = Field(default=1000)
    max_delay_ms: int = Field(default=5000)


class DisplayConfig(BaseModel):
    refresh_hz: float = Field(default=60.0)
    speaking_threshold: float = Field(default=0.01)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    gemini: GeminiLiveConfig = Field(default_factory=GeminiLiveConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str = "config/colloquy.yaml") -> AppConfig:
    """
    Load and validate configuration from YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
    """
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    inject_gemini_credentials(config_data)

    apply_audio_defaults(config_data)
    apply_logging_defaults(config_data)

    return AppConfig(**config_data)


def validate_config(config: AppConfig) -> tuple[list[str], list[str]]:
    """Validate configuration before opening devices.

    Returns:
        (errors, warnings): errors block startup, warnings are logged only.
    """
    errors = []
    warnings = []

    if not config.gemini.api_key:
        errors.append("No Gemini API key configured (set GEMINI_API_KEY or GOOGLE_API_KEY)")

    if config.audio.capture_sample_rate_hz < config.gemini.input_sample_rate_hz:
        errors.append(
            f"Capture rate {config.audio.capture_sample_rate_hz} Hz is below the wire rate "
            f"{config.gemini.input_sample_rate_hz} Hz"
        )
    elif config.audio.capture_sample_rate_hz % config.gemini.input_sample_rate_hz:
        warnings.append(
            f"Capture rate {config.audio.capture_sample_rate_hz} Hz is not a multiple of "
            f"{config.gemini.input_sample_rate_hz} Hz; frames will be interpolated instead of decimated"
        )

    if config.retry.max_attempts < 0:
        errors.append(f"retry.max_attempts must be >= 0 (got {config.retry.max_attempts})")

    frame_ms = 1000.0 * config.audio.frame_size / config.audio.capture_sample_rate_hz
    if frame_ms > 250:
        warnings.append(f"Capture frame is {frame_ms:.0f} ms; input latency will be noticeable")

    if config.audio.lead_time_ms < 20:
        warnings.append(f"Playback lead time very small: {config.audio.lead_time_ms}ms (expect gaps under jitter)")
    elif config.audio.lead_time_ms > 500:
        warnings.append(f"Playback lead time very large: {config.audio.lead_time_ms}ms (adds latency)")

    if os.getenv('LOG_LEVEL', 'info').lower() == 'debug':
        warnings.append("Debug logging enabled (per-frame events will be verbose)")

    if not config.gemini.instructions:
        warnings.append("No persona instructions configured; the model will use its default behaviour")

    return errors, warnings


__all__ = [
    'GEMINI_LIVE_ENDPOINT',
    'WIRE_INPUT_RATE_HZ',
    'WIRE_OUTPUT_RATE_HZ',
    'GeminiLiveConfig',
    'AudioConfig',
    'RetryConfig',
    'DisplayConfig',
    'LoggingConfig',
    'AppConfig',
    'load_config',
    'validate_config',
]
