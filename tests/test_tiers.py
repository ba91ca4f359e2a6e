from __future__ import annotations

import logging

import pytest

from src.recap_capture.tiers import (
    TierSlot,
    build_sync_sources,
    order_sync_members,
    parse_tier_assignments,
    resolve_tier_slot,
    select_sync_keys,
)


@pytest.mark.parametrize(
    ("tier_name", "expected"),
    [
        ("Gold 2", "/assets/tier/gold.mp4"),
        ("GRAND MASTER", "/assets/tier/grandmaster.mp4"),
        ("master", "/assets/tier/master.mp4"),
        ("Iron 4", "/assets/tier/iron.mp4"),
    ],
)
def test_resolve_tier_slot_maps_to_video(tier_name: str, expected: str) -> None:
    assert resolve_tier_slot(3, tier_name).video_path == expected


def test_resolve_tier_slot_static_badges() -> None:
    assert resolve_tier_slot(1, "Beginner") == TierSlot(key=1, is_beginner=True)
    assert resolve_tier_slot(2, "Amateur 3") == TierSlot(key=2, is_amateur=True)
    assert resolve_tier_slot(4, None) == TierSlot(key=4)


def test_build_sync_sources_and_registration_order() -> None:
    sources = build_sync_sources({52: "Diamond 1", 3: "Silver", 22: None, 7: "Beginner"}, "/cdn/tier/")

    assert sources == {
        52: "/cdn/tier/diamond.mp4",
        3: "/cdn/tier/silver.mp4",
        22: None,
        7: None,
    }
    assert select_sync_keys(sources) == [3, 52]


def test_order_sync_members_without_sources_sorts_numerically() -> None:
    assert order_sync_members(["10", "2", "intro", "33"]) == ["2", "10", "33", "intro"]


def test_order_sync_members_keeps_only_keys_with_sources(caplog: pytest.LogCaptureFixture) -> None:
    sources = build_sync_sources({52: "Diamond", 3: "Silver", 22: None, 9: "Gold"})

    with caplog.at_level(logging.WARNING, logger="src.recap_capture.tiers"):
        order = order_sync_members(["22", "52", "3"], sources)

    assert order == ["3", "52"]
    assert any("9" in record.getMessage() for record in caplog.records)


def test_parse_tier_assignments() -> None:
    assert parse_tier_assignments(["3=Gold 2", "22=", " 7 = Beginner "]) == {3: "Gold 2", 22: None, 7: "Beginner"}
    with pytest.raises(ValueError):
        parse_tier_assignments(["gold"])
