"""
Default value application for configuration.

This module handles:
- Audio device selection and rate overrides from environment variables
- Logging level override from environment variables
"""

import os
from typing import Any, Dict


def _device_from_env(name: str):
    """Parse a device selector: integer index when numeric, name substring otherwise."""
    raw = os.getenv(name, '').strip()
    if not raw:
        return None
    if raw.isdigit():
        return int(raw)
    return raw


def apply_audio_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply audio device defaults with environment variable overrides.

    Environment variables:
    - COLLOQUY_INPUT_DEVICE: microphone index or name (default: system default)
    - COLLOQUY_OUTPUT_DEVICE: speaker index or name (default: system default)
    - COLLOQUY_CAPTURE_RATE: capture sample rate in Hz (default: 16000)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    audio_cfg = config_data.get('audio', {}) or {}

    input_device = _device_from_env('COLLOQUY_INPUT_DEVICE')
    if input_device is not None:
        audio_cfg['input_device'] = input_device
    output_device = _device_from_env('COLLOQUY_OUTPUT_DEVICE')
    if output_device is not None:
        audio_cfg['output_device'] = output_device

    try:
        rate_default = audio_cfg.get('capture_sample_rate_hz', 16000)
        audio_cfg['capture_sample_rate_hz'] = int(os.getenv('COLLOQUY_CAPTURE_RATE', str(rate_default)))
    except ValueError:
        audio_cfg['capture_sample_rate_hz'] = 16000

    config_data['audio'] = audio_cfg


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply logging defaults.

    Environment variables:
    - LOG_LEVEL: overrides logging.level from YAML

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    logging_cfg = config_data.get('logging', {}) or {}
    env_level = os.getenv('LOG_LEVEL', '').strip()
    if env_level:
        logging_cfg['level'] = env_level.lower()
    logging_cfg.setdefault('level', 'info')
    config_data['logging'] = logging_cfg
