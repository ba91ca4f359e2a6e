"""Replace live video elements with still frames (or placeholders) for the duration of a capture."""

from __future__ import annotations

import logging
from typing import List

from src.datatypes import VideoConfig

from .dom import HAVE_CURRENT_DATA, CapturePage, NodeRef, VideoNode, VideoReplacement
from .errors import DomOperationError, FrameReadoutError
from .scope import DisposerList

__all__ = ["FRAME", "PLACEHOLDER", "VideoFrameFreezer"]

logger = logging.getLogger(__name__)

FRAME = "frame"
PLACEHOLDER = "placeholder"


class VideoFrameFreezer:
    """
    Splice a static stand-in in front of every video under a root and hide the video.

    Videos are hidden, never removed, so they resume unmodified once the registered
    disposer un-hides them and removes the stand-ins.
    """

    def __init__(self, config: VideoConfig) -> None:
        self._config = config

    async def freeze(self, page: CapturePage, root: NodeRef, disposers: DisposerList) -> List[VideoReplacement]:
        replacements: List[VideoReplacement] = []

        async def _restore_all() -> None:
            pending = list(replacements)
            replacements.clear()
            for item in pending:
                try:
                    await item.video.show(item.original_display)
                except DomOperationError as exc:
                    logger.warning("Could not un-hide video: %s", exc)
            for item in pending:
                try:
                    await item.replacement.remove()
                except DomOperationError as exc:
                    logger.warning("Could not remove %s stand-in: %s", item.kind, exc)

        disposers.add(_restore_all)

        for video in await page.videos(root):
            try:
                replacement = await self._freeze_one(video)
            except DomOperationError as exc:
                logger.warning("Video capture failed, leaving it in place: %s", exc)
                continue
            replacements.append(replacement)

        frames = sum(1 for item in replacements if item.kind == FRAME)
        logger.info(
            "Froze %d video(s): %d frame(s), %d placeholder(s)",
            len(replacements),
            frames,
            len(replacements) - frames,
        )
        return list(replacements)

    async def _freeze_one(self, video: VideoNode) -> VideoReplacement:
        frame_url = None
        if await video.ready_state() >= HAVE_CURRENT_DATA:
            try:
                frame_url = await video.capture_frame()
            except FrameReadoutError as exc:
                logger.warning("Video frame readout blocked (cross-origin?): %s", exc)
        node = await video.splice_replacement(
            frame_url=frame_url,
            placeholder_color=self._config.placeholder_color,
        )
        kind = FRAME if frame_url else PLACEHOLDER
        try:
            display = await video.hide()
        except DomOperationError:
            await node.remove()
            raise
        return VideoReplacement(video=video, replacement=node, kind=kind, original_display=display)
