"""Configuration loader that parses and validates user-provided TOML."""

from __future__ import annotations

import re
import tomllib
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Dict

from .datatypes import (
    AppConfig,
    BrowserConfig,
    CaptureConfig,
    FontConfig,
    InlineConfig,
    InlineMode,
    RasterConfig,
    RasterStrategyPreference,
    SyncConfig,
    VideoConfig,
)

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{4}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_ENGINES = {"chromium", "firefox", "webkit"}
_WAIT_UNTIL = {"load", "domcontentloaded", "networkidle", "commit"}


class ConfigError(ValueError):
    """Raised when the configuration file is malformed or fails validation."""


def _coerce_bool(value: Any, dotted_key: str) -> bool:
    """Return a bool, coercing simple 0/1 representations when necessary."""

    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"0", "1"}:
            return normalized == "1"
        if normalized in {"true", "false"}:
            return normalized == "true"
    raise ConfigError(f"{dotted_key} must be a boolean (use true/false).")


def _sanitize_section(raw: dict[str, Any], name: str, cls):
    """
    Coerce a raw TOML table into an instance of ``cls`` with cleaned booleans.

    Parameters:
        raw (dict[str, Any]): Raw TOML section data.
        name (str): Section name used when reporting validation errors.
        cls: Dataclass type used to construct the section object.

    Returns:
        Any: Instantiated dataclass populated with values from ``raw``.

    Raises:
        ConfigError: If the section is not a table or contains invalid keys or values.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    cleaned: Dict[str, Any] = {}
    cls_fields = {field.name: field for field in fields(cls)}
    bool_fields = {
        field_name
        for field_name, field in cls_fields.items()
        if field.type is bool or field.type == "bool"
    }
    nested_fields = {
        field_name: field.type
        for field_name, field in cls_fields.items()
        if is_dataclass(field.type)
    }
    provided_keys = set(raw.keys())
    for key, value in raw.items():
        if key in bool_fields:
            cleaned[key] = _coerce_bool(value, f"{name}.{key}")
        elif key in nested_fields:
            if not isinstance(value, dict):
                raise ConfigError(f"[{name}.{key}] must be a table")
            cleaned[key] = _sanitize_section(value, f"{name}.{key}", nested_fields[key])
        else:
            cleaned[key] = value
    try:
        instance = cls(**cleaned)
    except TypeError as exc:
        raise ConfigError(f"Invalid keys in [{name}]: {exc}") from exc
    setattr(instance, "_provided_keys", provided_keys)
    return instance


def _coerce_enum(value: Any, enum_cls, dotted_key: str):
    """Return ``value`` as a member of ``enum_cls`` or raise ``ConfigError``."""

    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(f"'{member.value}'" for member in enum_cls)
        raise ConfigError(f"{dotted_key} must be one of {choices}") from exc


def _validate_color(value: Any, dotted_key: str) -> str:
    text = str(value).strip()
    if not _HEX_COLOR.match(text):
        raise ConfigError(f"{dotted_key} must be a hex colour such as '#f2f4f6'")
    return text


def parse_config_text(text: str) -> AppConfig:
    """
    Parse TOML ``text`` into a validated :class:`AppConfig`.

    Raises:
        ConfigError: If TOML parsing fails or any validation rule is violated.
    """

    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse TOML: {exc}") from exc

    app = AppConfig(
        capture=_sanitize_section(raw.get("capture", {}), "capture", CaptureConfig),
        inline=_sanitize_section(raw.get("inline", {}), "inline", InlineConfig),
        fonts=_sanitize_section(raw.get("fonts", {}), "fonts", FontConfig),
        video=_sanitize_section(raw.get("video", {}), "video", VideoConfig),
        raster=_sanitize_section(raw.get("raster", {}), "raster", RasterConfig),
        sync=_sanitize_section(raw.get("sync", {}), "sync", SyncConfig),
        browser=_sanitize_section(raw.get("browser", {}), "browser", BrowserConfig),
    )

    capture = app.capture
    capture.background_color = _validate_color(capture.background_color, "capture.background_color")
    if capture.pixel_ratio <= 0:
        raise ConfigError("capture.pixel_ratio must be > 0")
    if capture.min_width < 0:
        raise ConfigError("capture.min_width must be >= 0")
    if capture.settle_frames < 0:
        raise ConfigError("capture.settle_frames must be >= 0")
    if capture.font_ready_timeout_seconds < 0:
        raise ConfigError("capture.font_ready_timeout_seconds must be >= 0")
    if not str(capture.output_dir).strip():
        raise ConfigError("capture.output_dir must be set")
    if "{nickname}" not in capture.file_name_template:
        raise ConfigError("capture.file_name_template must contain '{nickname}'")
    if not capture.root_selector.strip():
        raise ConfigError("capture.root_selector must be set")

    inline = app.inline
    inline.mode = _coerce_enum(inline.mode, InlineMode, "inline.mode")
    if not inline.relay_path.startswith("/"):
        raise ConfigError("inline.relay_path must start with '/'")
    if not inline.relay_param.strip():
        raise ConfigError("inline.relay_param must be set")
    if inline.timeout_seconds <= 0:
        raise ConfigError("inline.timeout_seconds must be > 0")
    if not isinstance(inline.retries, int) or inline.retries < 0:
        raise ConfigError("inline.retries must be an integer >= 0")

    if app.fonts.timeout_seconds <= 0:
        raise ConfigError("fonts.timeout_seconds must be > 0")

    app.video.placeholder_color = _validate_color(app.video.placeholder_color, "video.placeholder_color")

    raster = app.raster
    raster.strategy = _coerce_enum(raster.strategy, RasterStrategyPreference, "raster.strategy")
    if not isinstance(raster.incompatible_engines, list):
        raise ConfigError("raster.incompatible_engines must be a list of engine names")
    raster.incompatible_engines = [str(engine).strip().lower() for engine in raster.incompatible_engines]

    sync = app.sync
    if sync.period_seconds <= 0:
        raise ConfigError("sync.period_seconds must be > 0")
    if sync.start_tolerance_seconds < 0:
        raise ConfigError("sync.start_tolerance_seconds must be >= 0")
    if sync.drift_tolerance_seconds <= sync.start_tolerance_seconds:
        raise ConfigError("sync.drift_tolerance_seconds must be greater than sync.start_tolerance_seconds")
    if not 0 <= sync.visibility_threshold <= 1:
        raise ConfigError("sync.visibility_threshold must be between 0 and 1")
    if sync.master_min_ready_state not in (0, 1, 2, 3, 4):
        raise ConfigError("sync.master_min_ready_state must be between 0 and 4")

    browser = app.browser
    engine = browser.engine.strip().lower()
    if engine not in _ENGINES:
        raise ConfigError("browser.engine must be 'chromium', 'firefox', or 'webkit'")
    browser.engine = engine
    wait_until = browser.wait_until.strip().lower()
    if wait_until not in _WAIT_UNTIL:
        raise ConfigError("browser.wait_until must be load, domcontentloaded, networkidle, or commit")
    browser.wait_until = wait_until
    if browser.viewport_width <= 0 or browser.viewport_height <= 0:
        raise ConfigError("browser viewport dimensions must be > 0")
    if browser.navigation_timeout_seconds <= 0:
        raise ConfigError("browser.navigation_timeout_seconds must be > 0")

    return app


def load_config(path: str | Path) -> AppConfig:
    """
    Load and validate an application configuration from a TOML file.

    Reads the file at `path` as UTF-8 TOML (BOM is accepted) and returns a fully
    populated AppConfig.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ConfigError: If the file is not UTF-8, TOML parsing fails, or any validation rule is violated.
    """

    with open(path, "rb") as handle:
        raw_bytes = handle.read()
    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        raw_bytes = raw_bytes[3:]
    try:
        text = raw_bytes.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError("Configuration file must be UTF-8 encoded") from exc
    return parse_config_text(text)


def load_config_or_default(path: str | Path | None) -> AppConfig:
    """Return the parsed config at ``path``, or defaults when no file exists there."""

    if path is None:
        return AppConfig()
    try:
        return load_config(path)
    except FileNotFoundError:
        return AppConfig()
