"""
Environment variable helpers.

Each helper reads one variable and converts it to the requested type.
Missing or unparsable values fall back to the default; unparsable values
are logged so a typo in a deployment manifest does not go unnoticed.
"""

import logging
import os
from typing import List, Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_env_str(name: str, default: str = "") -> str:
    """Get a string environment variable."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip()


def get_env_int(name: str, default: int = 0) -> int:
    """Get an integer environment variable."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using default {default}")
        return default


def get_env_float(name: str, default: float = 0.0) -> float:
    """Get a float environment variable."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value.strip())
    except ValueError:
        logger.warning(f"Invalid float for {name}: {value!r}, using default {default}")
        return default


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get a boolean environment variable.

    Accepts 1/0, true/false, yes/no, on/off (case-insensitive).
    """
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning(f"Invalid boolean for {name}: {value!r}, using default {default}")
    return default


def get_env_list(name: str, default: Optional[List[str]] = None, separator: str = ",") -> List[str]:
    """Get a list environment variable split on ``separator``.

    Empty items are dropped, so ``"a,,b,"`` yields ``["a", "b"]``.
    """
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return list(default) if default is not None else []
    return [item.strip() for item in value.split(separator) if item.strip()]
