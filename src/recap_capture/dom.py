"""Typed seams between the capture pipeline and the live page it mutates.

The pipeline makes every decision in Python and talks to the browser only through
these protocols. ``browser.py`` implements them with Playwright; the test-suite
implements them with in-memory fakes. Implementations raise
:class:`~src.recap_capture.errors.DomOperationError` for browser-side failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Tuple

from .scope import Disposer

__all__ = [
    "BLOB_URL_PREFIX",
    "DATA_URL_PREFIX",
    "HAVE_CURRENT_DATA",
    "HAVE_FUTURE_DATA",
    "CapturePage",
    "CloneDocument",
    "FontUsage",
    "ImageNode",
    "ImageState",
    "LayoutState",
    "NodeRef",
    "ReplacementNode",
    "RootState",
    "RuntimeCapabilities",
    "StylesheetSource",
    "VideoNode",
    "VideoReplacement",
]

DATA_URL_PREFIX = "data:"
BLOB_URL_PREFIX = "blob:"

# HTMLMediaElement.readyState values
HAVE_CURRENT_DATA = 2
HAVE_FUTURE_DATA = 3

NodeRef = Any


@dataclass(frozen=True, slots=True)
class ImageState:
    """Original attributes of an image element, captured before it is rewritten."""

    src: Optional[str]
    current_src: str = ""
    srcset: Optional[str] = None
    sizes: Optional[str] = None
    loading: Optional[str] = None

    @property
    def effective_source(self) -> str:
        return self.current_src or self.src or ""


@dataclass(frozen=True, slots=True)
class LayoutState:
    """Scroll position and inline styles saved while the page layout is frozen."""

    scroll_x: float = 0.0
    scroll_y: float = 0.0
    html_overflow: str = ""
    body_overflow: str = ""
    body_width: str = ""
    body_height: str = ""


@dataclass(frozen=True, slots=True)
class RootState:
    """Inline width styles and marker attribute of the capture root before normalisation."""

    width: str = ""
    min_width: str = ""
    marker: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StylesheetSource:
    """One stylesheet reachable from the page; ``text`` is ``None`` when rules are unreadable."""

    href: Optional[str]
    text: Optional[str]


@dataclass(frozen=True, slots=True)
class FontUsage:
    """Font families applied inside the capture root and the stylesheets that may define them."""

    families: frozenset[str]
    stylesheets: Tuple[StylesheetSource, ...] = ()
    base_url: str = ""


@dataclass(frozen=True, slots=True)
class CloneDocument:
    """Self-contained markup for rendering a detached copy of the capture root."""

    html: str
    width: int
    height: int
    base_url: str


@dataclass(frozen=True, slots=True)
class RuntimeCapabilities:
    """Declared facts about the rendering engine behind a page."""

    engine: str
    user_agent: str = ""
    device_pixel_ratio: float = 1.0


class ReplacementNode(Protocol):
    async def remove(self) -> None:
        """Detach the node from its parent; no-op when already detached."""
        ...


class ImageNode(Protocol):
    async def read_state(self) -> ImageState: ...

    async def apply_inlined_source(self, src: str) -> None:
        """Set ``src``, drop ``srcset``/``sizes`` and force eager loading."""
        ...

    async def restore_state(self, state: ImageState) -> None: ...


class VideoNode(Protocol):
    async def ready_state(self) -> int: ...

    async def capture_frame(self) -> Optional[str]:
        """
        Return the current frame as a PNG data URL, or ``None`` when the canvas is empty.

        Raises:
            FrameReadoutError: When pixel readout is blocked.
        """
        ...

    async def splice_replacement(
        self,
        *,
        frame_url: Optional[str],
        placeholder_color: str,
    ) -> ReplacementNode:
        """Insert an image (``frame_url``) or a placeholder block in front of the video."""
        ...

    async def hide(self) -> str:
        """Hide the video with ``display: none`` and return the previous inline display value."""
        ...

    async def show(self, display: str) -> None: ...


@dataclass(slots=True)
class VideoReplacement:
    """A frozen video, the node standing in for it, and the display value to restore."""

    video: VideoNode
    replacement: ReplacementNode
    kind: str
    original_display: str = ""


class CapturePage(Protocol):
    """Page-level operations used by the export pipeline."""

    @property
    def origin(self) -> str: ...

    @property
    def url(self) -> str: ...

    async def images(self, root: NodeRef) -> Sequence[ImageNode]: ...

    async def videos(self, root: NodeRef) -> Sequence[VideoNode]: ...

    async def lock_layout(self) -> LayoutState: ...

    async def unlock_layout(self, state: LayoutState) -> None: ...

    async def normalize_root(self, root: NodeRef, min_width: int) -> RootState: ...

    async def restore_root(self, root: NodeRef, state: RootState) -> None: ...

    async def animation_frames(self, count: int) -> None: ...

    async def wait_images_decoded(self, root: NodeRef) -> None: ...

    async def wait_fonts_ready(self, root: NodeRef) -> None: ...

    async def create_object_url(self, payload: bytes, content_type: str) -> str: ...

    async def revoke_object_url(self, url: str) -> None: ...

    async def font_usage(self, root: NodeRef) -> FontUsage: ...

    async def capabilities(self) -> RuntimeCapabilities: ...

    async def inject_style(self, css: str) -> Disposer: ...

    async def hide_matching(self, root: NodeRef, selector: str) -> Disposer: ...

    async def replace_broken_images(self, root: NodeRef, placeholder: str) -> Disposer: ...

    async def cache_bust_images(self, root: NodeRef, token: str) -> Disposer: ...

    async def screenshot_element(self, root: NodeRef, *, background_color: str) -> bytes: ...

    async def serialize_clone(self, root: NodeRef, exclude_selector: str) -> CloneDocument: ...

    async def render_clone(
        self,
        clone: CloneDocument,
        *,
        font_css: str,
        scale: float,
        background_color: str,
    ) -> bytes: ...
