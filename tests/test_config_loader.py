from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest

from src.config_loader import ConfigError, _sanitize_section, load_config, load_config_or_default, parse_config_text
from src.datatypes import CaptureConfig, InlineMode, RasterStrategyPreference


def test_sanitize_section_records_provided_keys() -> None:
    raw: Dict[str, Any] = {"pixel_ratio": 2.0, "cache_bust": "0", "root_selector": "#recap"}

    capture = _sanitize_section(raw, "capture", CaptureConfig)

    provided = getattr(capture, "_provided_keys", set())
    assert provided == {"pixel_ratio", "cache_bust", "root_selector"}
    assert capture.cache_bust is False
    assert capture.background_color == "#f2f4f6"


def test_parse_config_text_full_document() -> None:
    cfg = parse_config_text(
        """
[capture]
background_color = "#FFFFFF"
pixel_ratio = 2
file_name_template = "{nickname}-{date}.png"

[inline]
mode = "DIRECT"
retries = 2

[raster]
strategy = "clone"
incompatible_engines = ["WebKit", "firefox"]

[sync]
drift_tolerance_seconds = 0.2

[browser]
engine = " Firefox "
wait_until = "load"
"""
    )

    assert cfg.capture.background_color == "#FFFFFF"
    assert cfg.capture.pixel_ratio == 2
    assert cfg.inline.mode is InlineMode.DIRECT
    assert cfg.inline.retries == 2
    assert cfg.raster.strategy is RasterStrategyPreference.CLONE
    assert cfg.raster.incompatible_engines == ["webkit", "firefox"]
    assert cfg.sync.drift_tolerance_seconds == 0.2
    assert cfg.browser.engine == "firefox"
    assert cfg.browser.wait_until == "load"


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("[capture]\nbackground_color = 'white'", "capture.background_color"),
        ("[capture]\npixel_ratio = 0", "capture.pixel_ratio"),
        ("[capture]\nfile_name_template = 'recap.png'", "{nickname}"),
        ("[capture]\nunknown = 1", "Invalid keys in [capture]"),
        ("[inline]\nmode = 'carrier-pigeon'", "inline.mode"),
        ("[inline]\nrelay_path = 'api/image-proxy'", "inline.relay_path"),
        ("[inline]\nretries = -1", "inline.retries"),
        ("[fonts]\nenabled = 'maybe'", "fonts.enabled"),
        ("[sync]\ndrift_tolerance_seconds = 0.01", "sync.drift_tolerance_seconds"),
        ("[sync]\nvisibility_threshold = 1.5", "sync.visibility_threshold"),
        ("[browser]\nengine = 'netscape'", "browser.engine"),
        ("capture = 3", "[capture] must be a table"),
        ("[capture", "Failed to parse TOML"),
    ],
)
def test_parse_config_text_rejects_invalid_values(text: str, message: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        parse_config_text(text)

    assert message in str(excinfo.value)


def test_load_config_accepts_bom(tmp_path: Path) -> None:
    path = tmp_path / "recap.toml"
    path.write_bytes(b"\xef\xbb\xbf[capture]\nmin_width = 800\n")

    assert load_config(path).capture.min_width == 800


def test_load_config_rejects_non_utf8(tmp_path: Path) -> None:
    path = tmp_path / "recap.toml"
    path.write_bytes(b"[capture]\nroot_selector = '\xff'\n")

    with pytest.raises(ConfigError, match="UTF-8"):
        load_config(path)


def test_load_config_or_default_handles_missing(tmp_path: Path) -> None:
    assert load_config_or_default(tmp_path / "missing.toml").capture.pixel_ratio == 3.0
    assert load_config_or_default(None).inline.mode is InlineMode.RELAY
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")
