"""Environment flag helpers."""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

__all__ = ["CONFIG_ENV_VAR", "VERBOSE_ENV_VAR", "env_flag_enabled", "verbose_requested"]

CONFIG_ENV_VAR = "RECAP_CAPTURE_CONFIG"
VERBOSE_ENV_VAR = "RECAP_CAPTURE_VERBOSE"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def env_flag_enabled(value: Any) -> bool:
    """Return ``True`` when *value* represents an enabled environment flag."""
    if value is None:
        return False
    if isinstance(value, bytes):
        text = value.decode(errors="ignore")
    else:
        text = str(value)
    return text.strip().lower() in _TRUE_VALUES


def verbose_requested(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return env_flag_enabled(env.get(VERBOSE_ENV_VAR))
