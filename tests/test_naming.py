from __future__ import annotations

import datetime as dt

import pytest

from src.recap_capture import naming


def test_sanitise_label_replaces_invalid_characters() -> None:
    result = naming.sanitise_label('Comp<>:"/\\|?*')
    disallowed = set('<>:"/\\|?*')
    assert all(ch not in disallowed for ch in result)
    assert result.startswith("Comp")


def test_sanitise_label_strips_windows_trailing_chars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(naming.os, "name", "nt", raising=False)
    result = naming.sanitise_label(" demo .")
    assert result == "demo"


def test_sanitise_label_falls_back_when_empty() -> None:
    assert naming.sanitise_label("   ") == "recap"


def test_build_export_filename_stamps_date() -> None:
    name = naming.build_export_filename("Faker/T1", date=dt.date(2025, 12, 31))
    assert name == "Faker_T1_2025_recap_2025-12-31.png"


def test_build_export_filename_honours_template() -> None:
    name = naming.build_export_filename("kim", "{date}-{nickname}.png", dt.date(2025, 1, 2))
    assert name == "2025-01-02-kim.png"
