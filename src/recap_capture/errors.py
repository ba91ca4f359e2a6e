from __future__ import annotations

__all__ = [
    "CaptureError",
    "DomOperationError",
    "FontEmbedError",
    "FrameReadoutError",
    "RasterizeError",
    "RelayFetchError",
]


class CaptureError(RuntimeError):
    """Base class for snapshot export issues."""


class RelayFetchError(CaptureError):
    """Raised when the image relay fails or returns a malformed response."""


class RasterizeError(CaptureError):
    """Raised when a rasterization strategy cannot produce an image."""


class FontEmbedError(CaptureError):
    """Raised when embeddable font CSS cannot be generated."""


class DomOperationError(CaptureError):
    """Raised by page adapters when a DOM read or write fails in the browser."""


class FrameReadoutError(DomOperationError):
    """Raised when a video frame cannot be read back (tainted canvas)."""
