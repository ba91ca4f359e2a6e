from __future__ import annotations

import datetime as _dt
import os
import re
from typing import Optional

__all__ = [
    "INVALID_LABEL_PATTERN",
    "build_export_filename",
    "sanitise_label",
]


INVALID_LABEL_PATTERN = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitise_label(label: str) -> str:
    """Return a filesystem-safe label while preserving user intent when possible."""

    cleaned = INVALID_LABEL_PATTERN.sub("_", label)
    if os.name == "nt":
        cleaned = cleaned.rstrip(" .")
    cleaned = cleaned.strip()
    return cleaned or "recap"


def build_export_filename(
    nickname: str,
    template: str = "{nickname}_2025_recap_{date}.png",
    date: Optional[_dt.date] = None,
) -> str:
    """Return the export file name for *nickname*, stamped with *date* (today by default)."""

    stamp = (date or _dt.date.today()).isoformat()
    return template.format(nickname=sanitise_label(nickname), date=stamp)
