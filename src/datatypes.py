"""Configuration dataclasses for the recap capture tool."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List


class InlineMode(str, Enum):
    """How cross-origin images are retrieved before rasterization."""

    RELAY = "relay"
    DIRECT = "direct"


class RasterStrategyPreference(str, Enum):
    """Which rasterization strategies the tiered rasterizer may attempt."""

    AUTO = "auto"
    PRIMARY = "primary"
    CLONE = "clone"


@dataclass
class CaptureConfig:
    """Snapshot export behaviour: output, layout normalisation, and waits."""

    background_color: str = "#f2f4f6"
    pixel_ratio: float = 3.0
    min_width: int = 1024
    settle_frames: int = 2
    font_ready_timeout_seconds: float = 3.0
    output_dir: str = "captures"
    file_name_template: str = "{nickname}_2025_recap_{date}.png"
    root_selector: str = "main"
    exclude_selector: str = "video"
    cache_bust: bool = True


@dataclass
class InlineConfig:
    """Relay endpoint and resize-indirection settings for image inlining."""

    mode: InlineMode = InlineMode.RELAY
    relay_base_url: str = ""
    relay_path: str = "/api/image-proxy"
    relay_param: str = "url"
    resize_path: str = "/_next/image"
    resize_param: str = "url"
    timeout_seconds: float = 15.0
    retries: int = 0


@dataclass
class FontConfig:
    """Font embedding controls."""

    enabled: bool = True
    timeout_seconds: float = 15.0


@dataclass
class VideoConfig:
    """Video frame freezing controls."""

    placeholder_color: str = "#1a1a1a"


@dataclass
class RasterConfig:
    """Strategy selection for the tiered rasterizer."""

    strategy: RasterStrategyPreference = RasterStrategyPreference.AUTO
    incompatible_engines: List[str] = field(default_factory=lambda: ["webkit"])


@dataclass
class SyncConfig:
    """Phase-lock policy for synchronized video groups."""

    period_seconds: float = 0.25
    drift_tolerance_seconds: float = 0.12
    start_tolerance_seconds: float = 0.02
    visibility_threshold: float = 0.2
    master_min_ready_state: int = 2


@dataclass
class BrowserConfig:
    """Playwright browser launch and navigation settings."""

    engine: str = "chromium"
    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 900
    wait_until: str = "networkidle"
    navigation_timeout_seconds: float = 30.0


@dataclass
class AppConfig:
    """Top-level configuration container."""

    capture: CaptureConfig = field(default_factory=CaptureConfig)
    inline: InlineConfig = field(default_factory=InlineConfig)
    fonts: FontConfig = field(default_factory=FontConfig)
    video: VideoConfig = field(default_factory=VideoConfig)
    raster: RasterConfig = field(default_factory=RasterConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
