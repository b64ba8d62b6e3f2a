"""
Config file location and YAML reading.

``${VAR}`` and ``${VAR:-fallback}`` references are expanded from the
environment before parsing. A reference to an unset variable without a
fallback is kept verbatim so validation can point at it.
"""

import os
import re
from pathlib import Path

import yaml

# Repository root: callbridge/config/loaders.py -> ../../
_PROJ_DIR = Path(__file__).resolve().parents[2]

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def resolve_config_path(path: str) -> str:
    """Return ``path`` unchanged if absolute, else anchored at the repository root."""
    if os.path.isabs(path):
        return path
    return str(_PROJ_DIR / path)


def expand_env_refs(text: str) -> str:
    def _sub(match):
        value = os.environ.get(match.group(1))
        if value is not None:
            return value
        fallback = match.group(2)
        return fallback if fallback is not None else match.group(0)

    return _ENV_REF.sub(_sub, text)


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Read a YAML mapping from ``path`` after expanding environment references.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the expanded text is not valid YAML
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    raw = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(expand_env_refs(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {e}")

    return data or {}
