"""
Locating and reading the Colloquy YAML config.

Environment references are expanded in the raw text before parsing:
``${VAR}``, ``$VAR`` and ``${VAR:-default}``. Names must start with a letter
or underscore, so prices such as ``$35/month`` in the persona pass through
untouched. Unset variables without a default are left verbatim.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml

# Project root directory (parent of colloquy/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

CONFIG_PATH_ENV = "COLLOQUY_CONFIG"

_ENV_REF = re.compile(
    r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


def expand_env_refs(text: str) -> str:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``$VAR`` in text."""

    def _replace(match: re.Match) -> str:
        name = match.group("braced") or match.group("bare")
        value = os.environ.get(name)
        if value is not None and (value != "" or match.group("default") is None):
            return value
        if match.group("default") is not None:
            return match.group("default")
        return match.group(0)

    return _ENV_REF.sub(_replace, text or "")


def resolve_config_path(path: str) -> str:
    """
    Absolute path of the config file to load.

    COLLOQUY_CONFIG overrides the default ``config/colloquy.yaml`` location.
    Relative paths resolve against the project root, not the working directory.
    """
    override = os.getenv(CONFIG_PATH_ENV, "").strip()
    if override and path == "config/colloquy.yaml":
        path = override
    path = os.path.expanduser(path)
    if not os.path.isabs(path):
        return str(_PROJ_DIR / path)
    return path


def load_yaml_with_env_expansion(path: str) -> Dict[str, Any]:
    """
    Read, expand and parse the config file.

    Raises:
        FileNotFoundError: the file does not exist
        yaml.YAMLError: the YAML is malformed or its top level is not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        config_data = yaml.safe_load(expand_env_refs(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise yaml.YAMLError(
            f"Error parsing YAML configuration: top level of {path} must be a mapping, "
            f"got {type(config_data).__name__}"
        )
    return config_data
