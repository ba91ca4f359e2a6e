"""Capture orchestrator: freeze layout, substitute resources, rasterize, deliver, restore."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from src.datatypes import AppConfig

from .cache import ResourceCache
from .dom import CapturePage, NodeRef
from .download import Downloader, FileDownloader
from .errors import DomOperationError
from .fonts import FontEmbedResolver
from .handles import TemporaryHandles
from .inliner import IMAGE_PLACEHOLDER, ResourceInliner
from .notify import FAILURE_MESSAGE, ConsoleNotifier, Notifier
from .rasterize import RasterRequest, TieredRasterizer
from .scope import DisposerList
from .video_freeze import VideoFrameFreezer

__all__ = ["CaptureHook", "CaptureOptions", "CaptureOrchestrator"]

logger = logging.getLogger(__name__)

CaptureHook = Callable[[NodeRef], Awaitable[None]]


@dataclass(slots=True)
class CaptureOptions:
    """Per-export options; unset values fall back to ``[capture]`` config."""

    file_name: str
    background_color: Optional[str] = None
    pixel_ratio: Optional[float] = None
    on_before_capture: Optional[CaptureHook] = None
    on_after_capture: Optional[CaptureHook] = None


class CaptureOrchestrator:
    """
    Export a DOM subtree of ``page`` to an image file.

    One export runs at a time; a call made while another is in flight does nothing.
    Every DOM mutation made during an export is undone before :meth:`save_as_image`
    returns, whether the export succeeded, failed, or was cancelled. Failures are
    reported through the notifier instead of being raised.
    """

    def __init__(
        self,
        page: CapturePage,
        config: AppConfig,
        client: httpx.AsyncClient,
        *,
        cache: Optional[ResourceCache] = None,
        downloader: Optional[Downloader] = None,
        notifier: Optional[Notifier] = None,
        rasterizer: Optional[TieredRasterizer] = None,
    ) -> None:
        self._page = page
        self._config = config
        self.cache = cache if cache is not None else ResourceCache()
        self._downloader = downloader or FileDownloader(Path(config.capture.output_dir))
        self._notifier = notifier or ConsoleNotifier()
        self._inliner = ResourceInliner(client, self.cache, config.inline)
        self._freezer = VideoFrameFreezer(config.video)
        self._fonts = FontEmbedResolver(client, self.cache, config.fonts)
        self._rasterizer = rasterizer or TieredRasterizer(
            preference=config.raster.strategy,
            incompatible_engines=config.raster.incompatible_engines,
        )
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def clear_cache(self) -> None:
        self.cache.clear()

    async def save_as_image(self, root: Optional[NodeRef], options: CaptureOptions) -> Optional[Path]:
        """Run one export of ``root``; return the written path, or ``None`` when skipped or failed."""

        if root is None:
            logger.debug("No capture root supplied; nothing to export")
            return None
        if self._in_flight:
            logger.info("Export already in progress; ignoring request for %s", options.file_name)
            return None
        self._in_flight = True
        try:
            return await self._run(root, options)
        finally:
            self._in_flight = False

    async def _run(self, root: NodeRef, options: CaptureOptions) -> Optional[Path]:
        page = self._page
        capture_cfg = self._config.capture
        layout = DisposerList("layout")
        resources = DisposerList("resource")
        handles = TemporaryHandles(page)
        try:
            layout_state = await page.lock_layout()
            layout.add(partial(page.unlock_layout, layout_state))

            if options.on_before_capture is not None:
                await options.on_before_capture(root)

            root_state = await page.normalize_root(root, capture_cfg.min_width)
            layout.add(partial(page.restore_root, root, root_state))
            await page.animation_frames(capture_cfg.settle_frames)

            outcomes = await asyncio.gather(
                self._freezer.freeze(page, root, resources),
                self._inliner.inline(page, root, resources, handles),
                return_exceptions=True,
            )
            for label, outcome in zip(("video freeze", "image inlining"), outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.warning("%s failed, continuing: %s", label.capitalize(), outcome)

            await page.wait_images_decoded(root)
            await self._wait_for_fonts(root)
            font_css = await self._fonts.resolve(page, root)

            request = RasterRequest(
                root=root,
                pixel_ratio=options.pixel_ratio or capture_cfg.pixel_ratio,
                background_color=options.background_color or capture_cfg.background_color,
                font_css=font_css,
                exclude_selector=capture_cfg.exclude_selector,
                image_placeholder=IMAGE_PLACEHOLDER,
                cache_bust=capture_cfg.cache_bust,
            )
            image = await self._rasterizer.rasterize(page, request)
            target = await self._downloader.deliver(image, options.file_name)
            self._notifier.success(f"Saved {target}")
            return target
        except Exception:
            logger.exception("Saving %s failed", options.file_name)
            self._notifier.failure(FAILURE_MESSAGE)
            return None
        finally:
            await resources.dispose()
            await handles.revoke_all()
            if options.on_after_capture is not None:
                try:
                    await options.on_after_capture(root)
                except Exception as exc:
                    logger.warning("After-capture hook failed: %s", exc)
            await layout.dispose()

    async def _wait_for_fonts(self, root: NodeRef) -> None:
        timeout = self._config.capture.font_ready_timeout_seconds
        try:
            await asyncio.wait_for(self._page.wait_fonts_ready(root), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Fonts not ready after %.1fs; capturing anyway", timeout)
        except DomOperationError as exc:
            logger.warning("Font readiness check failed: %s", exc)
