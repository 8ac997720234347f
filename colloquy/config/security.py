"""
Security-critical configuration injection.

This module handles:
- Gemini API key injection (ONLY from environment variables)
- Environment variable token expansion for the persona text

SECURITY POLICY:
- API keys MUST NEVER be in YAML files
- All credentials MUST come from environment variables only
"""

import os
from typing import Any, Dict

from colloquy.config.loaders import expand_env_refs

# Checked in order; the first non-empty value wins
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


def _is_nonempty_string(val: Any) -> bool:
    """
    Check if value is a non-empty string.

    Args:
        val: Value to check

    Returns:
        True if val is a string with non-whitespace content
    """
    return isinstance(val, str) and val.strip() != ""


def expand_string_tokens(value: str) -> str:
    """
    Expand environment variable tokens in a string.

    Same syntax as the YAML loader: ${VAR}, ${VAR:-default} and $VAR.
    Undefined variables without a default are left unchanged.
    """
    return expand_env_refs(value or "")


def resolve_api_key() -> str | None:
    """Return the first non-empty Gemini API key found in the environment."""
    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if _is_nonempty_string(value):
            return value.strip()
    return None


def inject_gemini_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject the Gemini API key from environment variables ONLY.

    SECURITY: Any api_key present in YAML is discarded, then replaced with
    GEMINI_API_KEY (or GOOGLE_API_KEY) when set.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    gemini_cfg = config_data.get('gemini')
    if not isinstance(gemini_cfg, dict):
        gemini_cfg = {}

    gemini_cfg.pop('api_key', None)
    api_key = resolve_api_key()
    if api_key:
        gemini_cfg['api_key'] = api_key

    instructions = gemini_cfg.get('instructions')
    if _is_nonempty_string(instructions):
        gemini_cfg['instructions'] = expand_string_tokens(instructions).strip()

    config_data['gemini'] = gemini_cfg
