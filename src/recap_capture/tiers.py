"""Map per-mode tier records to the video sources that make up a synchronized group."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

__all__ = [
    "TIER_VIDEO_NAMES",
    "TierSlot",
    "build_sync_sources",
    "order_sync_members",
    "parse_tier_assignments",
    "resolve_tier_slot",
    "select_sync_keys",
]

logger = logging.getLogger(__name__)

TIER_VIDEO_NAMES = (
    "iron",
    "bronze",
    "silver",
    "gold",
    "platinum",
    "diamond",
    "master",
    "grandmaster",
)


@dataclass(frozen=True, slots=True)
class TierSlot:
    """What one keyed slot renders: a looping tier video, a static badge, or nothing."""

    key: int
    video_path: Optional[str] = None
    is_beginner: bool = False
    is_amateur: bool = False


def resolve_tier_slot(key: int, tier_name: Optional[str], asset_prefix: str = "/assets/tier") -> TierSlot:
    if not tier_name:
        return TierSlot(key=key)
    compact = "".join(tier_name.split()).lower()
    for name in TIER_VIDEO_NAMES:
        if compact.startswith(name):
            return TierSlot(key=key, video_path=f"{asset_prefix.rstrip('/')}/{name}.mp4")
    return TierSlot(key=key, is_beginner="beginner" in compact, is_amateur="amateur" in compact)


def build_sync_sources(
    tiers: Mapping[int, Optional[str]],
    asset_prefix: str = "/assets/tier",
) -> Dict[int, Optional[str]]:
    """Return ``key -> video source`` (``None`` for "no data") for every tier slot."""

    return {key: resolve_tier_slot(key, name, asset_prefix).video_path for key, name in tiers.items()}


def select_sync_keys(sources: Mapping[int, Optional[str]]) -> List[int]:
    """Registration order for a sync group: ascending key, slots with a source only."""

    return sorted(key for key, source in sources.items() if source)


def order_sync_members(
    dom_keys: Iterable[str],
    sources: Optional[Mapping[int, Optional[str]]] = None,
) -> List[str]:
    """
    Registration order for the ``data-sync-key`` values found in the page.

    Without ``sources`` every numeric key joins in ascending order, then any
    non-numeric keys. With ``sources`` only keys that map to a video source take
    part, in :func:`select_sync_keys` order; slots with no data are left out.
    """

    present = set(dom_keys)
    if sources is None:
        return sorted(present, key=lambda item: (0, int(item)) if item.isdigit() else (1, item))
    wanted = [str(key) for key in select_sync_keys(sources)]
    missing = [key for key in wanted if key not in present]
    if missing:
        logger.warning("No video element for sync key(s) %s", ", ".join(missing))
    return [key for key in wanted if key in present]


def parse_tier_assignments(values: Iterable[str]) -> Dict[int, Optional[str]]:
    """Parse ``KEY=TIER`` pairs (``KEY=`` for a slot with no data)."""

    tiers: Dict[int, Optional[str]] = {}
    for value in values:
        key_text, sep, name = value.partition("=")
        key_text = key_text.strip()
        if not sep or not key_text.lstrip("-").isdigit():
            raise ValueError(f"expected KEY=TIER, got {value!r}")
        tiers[int(key_text)] = name.strip() or None
    return tiers
