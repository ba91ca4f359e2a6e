"""Tiered DOM-to-raster conversion with a capability-keyed strategy table."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Protocol

from src.datatypes import RasterStrategyPreference

from .dom import BLOB_URL_PREFIX, CapturePage, NodeRef, RuntimeCapabilities
from .errors import RasterizeError
from .inliner import IMAGE_PLACEHOLDER
from .scope import DisposerList

__all__ = [
    "CloneRenderStrategy",
    "ElementScreenshotStrategy",
    "RasterImage",
    "RasterRequest",
    "RasterStrategy",
    "StrategyName",
    "TieredRasterizer",
    "detect_engine",
    "plan_strategies",
    "should_cache_bust",
]

logger = logging.getLogger(__name__)


class StrategyName(str, Enum):
    PRIMARY = "primary"
    CLONE = "clone"


@dataclass(frozen=True, slots=True)
class RasterImage:
    """Rasterized output: raw PNG bytes, or a ``data:`` URL when only that is available."""

    data: Optional[bytes] = None
    data_url: Optional[str] = None
    content_type: str = "image/png"

    def to_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if not self.data_url or "," not in self.data_url:
            raise RasterizeError("raster output is empty")
        header, _, body = self.data_url.partition(",")
        if not header.endswith(";base64"):
            raise RasterizeError("raster data URL is not base64 encoded")
        try:
            return base64.b64decode(body, validate=True)
        except binascii.Error as exc:
            raise RasterizeError(f"raster data URL is malformed: {exc}") from exc


@dataclass(frozen=True, slots=True)
class RasterRequest:
    """Inputs shared by every rasterization strategy."""

    root: NodeRef
    pixel_ratio: float
    background_color: str
    font_css: str = ""
    exclude_selector: str = "video"
    image_placeholder: str = IMAGE_PLACEHOLDER
    cache_bust: bool = True


class RasterStrategy(Protocol):
    name: StrategyName

    async def render(self, page: CapturePage, request: RasterRequest) -> RasterImage: ...


def detect_engine(browser_name: str, user_agent: str = "") -> str:
    """Return ``chromium``, ``firefox`` or ``webkit`` from a browser name or user-agent signature."""

    name = (browser_name or "").strip().lower()
    if name in {"chromium", "firefox", "webkit"}:
        return name
    agent = user_agent or ""
    if "Firefox/" in agent:
        return "firefox"
    if "Chrome/" in agent or "Chromium/" in agent or "Edg/" in agent:
        return "chromium"
    if "Safari/" in agent or "AppleWebKit/" in agent:
        return "webkit"
    return name or "unknown"


def plan_strategies(
    capabilities: RuntimeCapabilities,
    pixel_ratio: float,
    *,
    preference: RasterStrategyPreference = RasterStrategyPreference.AUTO,
    incompatible_engines: Iterable[str] = ("webkit",),
) -> List[StrategyName]:
    """
    Return the ordered strategies to attempt for a runtime.

    The primary strategy renders in the live page, so it is dropped when the engine is
    known to misrender it or when the page's device pixel ratio cannot honour
    ``pixel_ratio``. The clone strategy is always the last resort.
    """

    if preference is RasterStrategyPreference.CLONE:
        return [StrategyName.CLONE]
    engine = detect_engine(capabilities.engine, capabilities.user_agent)
    blocked = {item.lower() for item in incompatible_engines}
    primary_ok = engine not in blocked and abs(capabilities.device_pixel_ratio - pixel_ratio) < 1e-6
    if preference is RasterStrategyPreference.PRIMARY:
        return [StrategyName.PRIMARY] if primary_ok else [StrategyName.CLONE]
    if primary_ok:
        return [StrategyName.PRIMARY, StrategyName.CLONE]
    return [StrategyName.CLONE]


def should_cache_bust(sources: Iterable[str]) -> bool:
    """Cache-busting is only safe when no image already points at a temporary handle."""

    return not any(source.startswith(BLOB_URL_PREFIX) for source in sources)


async def _current_sources(page: CapturePage, root: NodeRef) -> List[str]:
    return [(await node.read_state()).effective_source for node in await page.images(root)]


class ElementScreenshotStrategy:
    """Screenshot the live element with fonts injected and excluded nodes hidden."""

    name = StrategyName.PRIMARY

    async def render(self, page: CapturePage, request: RasterRequest) -> RasterImage:
        disposers = DisposerList("primary raster")
        try:
            if request.font_css:
                disposers.add(await page.inject_style(request.font_css))
            disposers.add(await page.hide_matching(request.root, request.exclude_selector))
            disposers.add(await page.replace_broken_images(request.root, request.image_placeholder))
            if request.cache_bust and should_cache_bust(await _current_sources(page, request.root)):
                token = str(int(time.time() * 1000))
                disposers.add(await page.cache_bust_images(request.root, token))
                await page.wait_images_decoded(request.root)
            data = await page.screenshot_element(request.root, background_color=request.background_color)
        finally:
            await disposers.dispose()
        if not data:
            raise RasterizeError("element screenshot returned no data")
        return RasterImage(data=data)


class CloneRenderStrategy:
    """Render a serialized clone of the subtree in an isolated page."""

    name = StrategyName.CLONE

    async def render(self, page: CapturePage, request: RasterRequest) -> RasterImage:
        clone = await page.serialize_clone(request.root, request.exclude_selector)
        if clone.width <= 0 or clone.height <= 0:
            raise RasterizeError("capture root has no rendered size")
        data = await page.render_clone(
            clone,
            font_css=request.font_css,
            scale=request.pixel_ratio,
            background_color=request.background_color,
        )
        if not data:
            raise RasterizeError("clone render returned no data")
        return RasterImage(data=data)


class TieredRasterizer:
    """Try each planned strategy in order; raise only when all of them fail."""

    def __init__(
        self,
        strategies: Optional[Mapping[StrategyName, RasterStrategy]] = None,
        *,
        preference: RasterStrategyPreference = RasterStrategyPreference.AUTO,
        incompatible_engines: Iterable[str] = ("webkit",),
    ) -> None:
        self._strategies: Mapping[StrategyName, RasterStrategy] = strategies or {
            StrategyName.PRIMARY: ElementScreenshotStrategy(),
            StrategyName.CLONE: CloneRenderStrategy(),
        }
        self._preference = preference
        self._incompatible = tuple(incompatible_engines)

    async def rasterize(self, page: CapturePage, request: RasterRequest) -> RasterImage:
        capabilities = await page.capabilities()
        plan = plan_strategies(
            capabilities,
            request.pixel_ratio,
            preference=self._preference,
            incompatible_engines=self._incompatible,
        )
        logger.debug("Rasterization plan for %s: %s", capabilities.engine, [item.value for item in plan])
        failures: List[str] = []
        last_error: Optional[Exception] = None
        for name in plan:
            strategy = self._strategies.get(name)
            if strategy is None:
                continue
            try:
                image = await strategy.render(page, request)
            except Exception as exc:
                logger.warning("Rasterization strategy '%s' failed: %s", name.value, exc)
                failures.append(f"{name.value}: {exc}")
                last_error = exc
                continue
            logger.info("Rasterized capture root with '%s' strategy", name.value)
            return image
        raise RasterizeError("all rasterization strategies failed (" + "; ".join(failures) + ")") from last_error
