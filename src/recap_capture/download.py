"""Deliver a rasterized capture to disk under the caller-supplied file name."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from .naming import sanitise_label
from .rasterize import RasterImage

__all__ = ["Downloader", "FileDownloader"]

logger = logging.getLogger(__name__)


class Downloader(Protocol):
    async def deliver(self, image: RasterImage, file_name: str) -> Path: ...


class FileDownloader:
    """Write capture output into ``output_dir`` atomically."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def target_for(self, file_name: str) -> Path:
        name = sanitise_label(Path(file_name).name)
        if not Path(name).suffix:
            name = f"{name}.png"
        return self.output_dir / name

    async def deliver(self, image: RasterImage, file_name: str) -> Path:
        payload = image.to_bytes()
        target = self.target_for(file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".capture-", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Saved capture to %s (%d bytes)", target, len(payload))
        return target
