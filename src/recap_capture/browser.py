"""Playwright implementations of the page seams, plus browser session and sync-group wiring."""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from playwright.async_api import Browser, BrowserContext, ElementHandle, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from src.datatypes import BrowserConfig

from .dom import (
    CloneDocument,
    FontUsage,
    ImageState,
    LayoutState,
    NodeRef,
    RootState,
    RuntimeCapabilities,
    StylesheetSource,
)
from .errors import DomOperationError, FontEmbedError, FrameReadoutError
from .inliner import origin_of
from .scope import Disposer
from .sync import PhaseSynchronizer, SyncPolicy
from .tiers import order_sync_members

__all__ = [
    "BrowserSession",
    "PlaywrightCapturePage",
    "PlaywrightImageNode",
    "PlaywrightReplacementNode",
    "PlaywrightVideoMember",
    "PlaywrightVideoNode",
    "SyncGroupBinding",
    "attach_sync_group",
]

logger = logging.getLogger(__name__)

ROOT_MARKER_ATTR = "data-recap-capture"
CLONE_ROOT_ATTR = "data-recap-clone-root"
SYNC_KEY_ATTR = "data-sync-key"

# Page-side mutations register an undo closure under an id; Python keeps only the id.
_REGISTRY_JS = """
() => {
    if (!window.__recapRestore) {
        window.__recapRestore = { next: 1, fns: {} };
    }
    return true;
}
"""

_RUN_RESTORE_JS = """
(id) => {
    const reg = window.__recapRestore;
    if (!reg || !reg.fns[id]) return false;
    const fn = reg.fns[id];
    delete reg.fns[id];
    fn();
    return true;
}
"""

_LOCK_LAYOUT_JS = """
() => {
    const html = document.documentElement;
    const body = document.body;
    const state = {
        scroll_x: window.scrollX,
        scroll_y: window.scrollY,
        html_overflow: html.style.overflow,
        body_overflow: body ? body.style.overflow : '',
        body_width: body ? body.style.width : '',
        body_height: body ? body.style.height : '',
    };
    window.scrollTo(0, 0);
    html.style.overflow = 'hidden';
    if (body) {
        body.style.overflow = 'hidden';
        body.style.width = body.getBoundingClientRect().width + 'px';
    }
    return state;
}
"""

_UNLOCK_LAYOUT_JS = """
(state) => {
    const html = document.documentElement;
    const body = document.body;
    html.style.overflow = state.html_overflow;
    if (body) {
        body.style.overflow = state.body_overflow;
        body.style.width = state.body_width;
        body.style.height = state.body_height;
    }
    window.scrollTo(state.scroll_x, state.scroll_y);
}
"""

_NORMALIZE_ROOT_JS = """
(el, [minWidth, attr]) => {
    const state = {
        width: el.style.width,
        min_width: el.style.minWidth,
        marker: el.getAttribute(attr),
    };
    const width = Math.max(el.getBoundingClientRect().width, minWidth);
    el.style.width = width + 'px';
    el.style.minWidth = minWidth + 'px';
    el.setAttribute(attr, 'root');
    return state;
}
"""

_RESTORE_ROOT_JS = """
(el, [state, attr]) => {
    el.style.width = state.width;
    el.style.minWidth = state.min_width;
    if (state.marker === null) el.removeAttribute(attr);
    else el.setAttribute(attr, state.marker);
}
"""

_ANIMATION_FRAMES_JS = """
async (count) => {
    for (let i = 0; i < count; i++) {
        await new Promise((resolve) => requestAnimationFrame(() => resolve()));
    }
}
"""

_WAIT_IMAGES_JS = """
async (root) => {
    const images = Array.from(root.querySelectorAll('img'));
    await Promise.all(images.map((img) => {
        if (img.complete && img.naturalWidth > 0) return Promise.resolve();
        if (typeof img.decode === 'function') return img.decode().catch(() => {});
        return new Promise((resolve) => {
            img.addEventListener('load', resolve, { once: true });
            img.addEventListener('error', resolve, { once: true });
        });
    }));
}
"""

_WAIT_FONTS_JS = """
async () => {
    if (document.fonts && document.fonts.ready) await document.fonts.ready;
}
"""

_CREATE_OBJECT_URL_JS = """
([encoded, type]) => {
    const binary = atob(encoded);
    const bytes = new Uint8Array(binary.length);
    for (let i = 0; i < binary.length; i++) bytes[i] = binary.charCodeAt(i);
    return URL.createObjectURL(new Blob([bytes], { type }));
}
"""

_FONT_USAGE_JS = """
(root) => {
    const families = new Set();
    const nodes = [root, ...root.querySelectorAll('*')];
    for (const node of nodes) {
        const value = getComputedStyle(node).fontFamily || '';
        for (const name of value.split(',')) {
            const cleaned = name.trim().replace(/^['"]|['"]$/g, '').trim().toLowerCase();
            if (cleaned) families.add(cleaned);
        }
    }
    const sheets = [];
    for (const sheet of Array.from(document.styleSheets)) {
        let text = null;
        try {
            text = Array.from(sheet.cssRules).map((rule) => rule.cssText).join('\\n');
        } catch (err) {
            text = null;
        }
        sheets.push({ href: sheet.href, text });
    }
    return { families: Array.from(families), stylesheets: sheets, base_url: document.baseURI };
}
"""

_CAPABILITIES_JS = """
() => ({ user_agent: navigator.userAgent, device_pixel_ratio: window.devicePixelRatio || 1 })
"""

_INJECT_STYLE_JS = """
(css) => {
    const style = document.createElement('style');
    style.setAttribute('data-recap-fonts', '');
    style.textContent = css;
    document.head.appendChild(style);
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => style.remove();
    return id;
}
"""

_HIDE_MATCHING_JS = """
(root, selector) => {
    const saved = [];
    for (const el of root.querySelectorAll(selector)) {
        saved.push([el, el.style.visibility]);
        el.style.visibility = 'hidden';
    }
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => { for (const [el, value] of saved) el.style.visibility = value; };
    return id;
}
"""

_REPLACE_BROKEN_JS = """
(root, placeholder) => {
    const saved = [];
    for (const img of root.querySelectorAll('img')) {
        if (img.complete && img.naturalWidth === 0) {
            saved.push([img, img.getAttribute('src')]);
            img.setAttribute('src', placeholder);
        }
    }
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => {
        for (const [img, src] of saved) {
            if (src === null) img.removeAttribute('src');
            else img.setAttribute('src', src);
        }
    };
    return id;
}
"""

_CACHE_BUST_JS = """
(root, token) => {
    const saved = [];
    for (const img of root.querySelectorAll('img')) {
        const src = img.getAttribute('src');
        if (!src || !/^https?:/i.test(src)) continue;
        saved.push([img, src]);
        img.setAttribute('src', src + (src.includes('?') ? '&' : '?') + '_cb=' + token);
    }
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => { for (const [img, src] of saved) img.setAttribute('src', src); };
    return id;
}
"""

_SET_BACKGROUND_JS = """
(el, color) => {
    const previous = el.style.backgroundColor;
    el.style.backgroundColor = color;
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => { el.style.backgroundColor = previous; };
    return id;
}
"""

_SERIALIZE_CLONE_JS = """
async (root, [exclude, attr]) => {
    const toDataUrl = async (url) => {
        const blob = await (await fetch(url)).blob();
        return await new Promise((resolve, reject) => {
            const reader = new FileReader();
            reader.onload = () => resolve(reader.result);
            reader.onerror = () => reject(reader.error);
            reader.readAsDataURL(blob);
        });
    };
    const rect = root.getBoundingClientRect();
    const clone = root.cloneNode(true);
    if (exclude) {
        for (const el of clone.querySelectorAll(exclude)) el.remove();
    }
    for (const img of clone.querySelectorAll('img')) {
        const src = img.getAttribute('src') || '';
        if (src.startsWith('blob:')) {
            try {
                img.setAttribute('src', await toDataUrl(src));
            } catch (err) {
                img.removeAttribute('src');
            }
        }
    }
    clone.setAttribute(attr, '');
    const head = Array.from(document.querySelectorAll('style, link[rel="stylesheet"]'))
        .map((el) => el.outerHTML)
        .join('\\n');
    const html = '<!DOCTYPE html><html class="' + document.documentElement.className + '">'
        + '<head><meta charset="utf-8"><base href="' + document.baseURI + '">' + head + '</head>'
        + '<body class="' + document.body.className + '" style="margin:0">' + clone.outerHTML
        + '</body></html>';
    return {
        html,
        width: Math.ceil(rect.width),
        height: Math.ceil(rect.height),
        base_url: document.baseURI,
    };
}
"""

_READ_IMAGE_JS = """
(img) => ({
    src: img.getAttribute('src'),
    current_src: img.currentSrc || '',
    srcset: img.getAttribute('srcset'),
    sizes: img.getAttribute('sizes'),
    loading: img.getAttribute('loading'),
})
"""

_APPLY_IMAGE_JS = """
(img, src) => {
    img.removeAttribute('srcset');
    img.removeAttribute('sizes');
    img.setAttribute('loading', 'eager');
    img.setAttribute('src', src);
}
"""

_RESTORE_IMAGE_JS = """
(img, state) => {
    for (const name of ['srcset', 'sizes', 'loading', 'src']) {
        const value = state[name];
        if (value === null || value === undefined) img.removeAttribute(name);
        else img.setAttribute(name, value);
    }
}
"""

_CAPTURE_FRAME_JS = """
(video) => {
    const width = video.videoWidth;
    const height = video.videoHeight;
    if (!width || !height) return { url: null };
    const canvas = document.createElement('canvas');
    canvas.width = width;
    canvas.height = height;
    const ctx = canvas.getContext('2d');
    if (!ctx) return { url: null };
    try {
        ctx.drawImage(video, 0, 0, width, height);
        return { url: canvas.toDataURL('image/png') };
    } catch (err) {
        return { error: String(err && err.name ? err.name + ': ' + err.message : err) };
    }
}
"""

_SPLICE_REPLACEMENT_JS = """
(video, [frameUrl, color]) => {
    const rect = video.getBoundingClientRect();
    const computed = getComputedStyle(video);
    const node = frameUrl ? document.createElement('img') : document.createElement('div');
    if (frameUrl) {
        node.setAttribute('src', frameUrl);
        node.style.objectFit = computed.objectFit;
    } else {
        node.style.backgroundColor = color;
    }
    node.className = video.className;
    node.style.width = rect.width + 'px';
    node.style.height = rect.height + 'px';
    node.style.display = computed.display === 'inline' ? 'inline-block' : computed.display;
    node.style.borderRadius = computed.borderRadius;
    node.setAttribute('data-recap-standin', '');
    video.parentNode.insertBefore(node, video);
    return node;
}
"""

_HIDE_VIDEO_JS = """
(video) => {
    const previous = video.style.display;
    video.style.display = 'none';
    return previous;
}
"""

_SEEK_JS = """
(video, seconds) => new Promise((resolve) => {
    let timer = null;
    const done = () => {
        video.removeEventListener('seeked', done);
        clearTimeout(timer);
        resolve(video.currentTime);
    };
    video.addEventListener('seeked', done);
    timer = setTimeout(done, 3000);
    video.currentTime = seconds;
})
"""

_ATTACH_SYNC_JS = """
(container, [readyName, visibleName, keyAttr, threshold]) => {
    const videos = Array.from(container.querySelectorAll('video[' + keyAttr + ']'));
    const cleanups = [];
    for (const video of videos) {
        const key = video.getAttribute(keyAttr);
        let reported = false;
        const report = () => {
            if (reported) return;
            reported = true;
            window[readyName](key);
        };
        if (video.readyState >= 3) {
            report();
        } else {
            video.addEventListener('canplay', report);
            cleanups.push(() => video.removeEventListener('canplay', report));
        }
    }
    const observer = new IntersectionObserver((entries) => {
        for (const entry of entries) window[visibleName](entry.isIntersecting ? entry.intersectionRatio : 0);
    }, { threshold: [0, threshold] });
    observer.observe(container);
    cleanups.push(() => observer.disconnect());
    const reg = window.__recapRestore;
    const id = reg.next++;
    reg.fns[id] = () => { for (const fn of cleanups) fn(); };
    return id;
}
"""

_binding_ids = itertools.count(1)


def _wrap(exc: PlaywrightError, action: str) -> DomOperationError:
    return DomOperationError(f"{action} failed: {exc.message}")


async def _evaluate(target: Any, script: str, arg: Any = None, *, action: str) -> Any:
    try:
        if arg is None:
            return await target.evaluate(script)
        return await target.evaluate(script, arg)
    except PlaywrightError as exc:
        raise _wrap(exc, action) from exc


class PlaywrightReplacementNode:
    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    async def remove(self) -> None:
        await _evaluate(self._handle, "(el) => el.remove()", action="remove stand-in")
        await self._handle.dispose()


class PlaywrightImageNode:
    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    async def read_state(self) -> ImageState:
        data = await _evaluate(self._handle, _READ_IMAGE_JS, action="read image")
        return ImageState(
            src=data.get("src"),
            current_src=data.get("current_src") or "",
            srcset=data.get("srcset"),
            sizes=data.get("sizes"),
            loading=data.get("loading"),
        )

    async def apply_inlined_source(self, src: str) -> None:
        await _evaluate(self._handle, _APPLY_IMAGE_JS, src, action="rewrite image")

    async def restore_state(self, state: ImageState) -> None:
        payload = {"src": state.src, "srcset": state.srcset, "sizes": state.sizes, "loading": state.loading}
        await _evaluate(self._handle, _RESTORE_IMAGE_JS, payload, action="restore image")


class PlaywrightVideoNode:
    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    async def ready_state(self) -> int:
        return int(await _evaluate(self._handle, "(v) => v.readyState", action="read readyState"))

    async def capture_frame(self) -> Optional[str]:
        result = await _evaluate(self._handle, _CAPTURE_FRAME_JS, action="capture frame")
        if result.get("error"):
            raise FrameReadoutError(result["error"])
        return result.get("url")

    async def splice_replacement(self, *, frame_url: Optional[str], placeholder_color: str) -> PlaywrightReplacementNode:
        try:
            handle = await self._handle.evaluate_handle(_SPLICE_REPLACEMENT_JS, [frame_url, placeholder_color])
        except PlaywrightError as exc:
            raise _wrap(exc, "insert stand-in") from exc
        element = handle.as_element()
        if element is None:
            raise DomOperationError("stand-in insertion returned no element")
        return PlaywrightReplacementNode(element)

    async def hide(self) -> str:
        return str(await _evaluate(self._handle, _HIDE_VIDEO_JS, action="hide video"))

    async def show(self, display: str) -> None:
        await _evaluate(self._handle, "(v, d) => { v.style.display = d; }", display, action="show video")


class PlaywrightVideoMember:
    """A ``<video>`` participating in a sync group."""

    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    async def current_time(self) -> float:
        return float(await _evaluate(self._handle, "(v) => v.currentTime", action="read currentTime"))

    async def set_current_time(self, seconds: float) -> None:
        await _evaluate(self._handle, "(v, t) => { v.currentTime = t; }", seconds, action="set currentTime")

    async def ready_state(self) -> int:
        return int(await _evaluate(self._handle, "(v) => v.readyState", action="read readyState"))

    async def pause(self) -> None:
        await _evaluate(self._handle, "(v) => v.pause()", action="pause")

    async def play(self) -> None:
        await _evaluate(self._handle, "async (v) => { await v.play(); }", action="play")

    async def seek(self, seconds: float) -> None:
        await _evaluate(self._handle, _SEEK_JS, seconds, action="seek")


class PlaywrightCapturePage:
    """:class:`~src.recap_capture.dom.CapturePage` backed by a live Playwright page."""

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def page(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def origin(self) -> str:
        return origin_of(self._page.url)

    async def query_root(self, selector: str) -> Optional[ElementHandle]:
        try:
            return await self._page.query_selector(selector)
        except PlaywrightError as exc:
            raise _wrap(exc, f"query {selector!r}") from exc

    async def _ensure_registry(self) -> None:
        await _evaluate(self._page, _REGISTRY_JS, action="install restore registry")

    def _disposer(self, restore_id: int, label: str) -> Disposer:
        async def _dispose() -> None:
            await _evaluate(self._page, _RUN_RESTORE_JS, restore_id, action=f"restore {label}")

        return _dispose

    async def register_mutation(self, target: Any, script: str, arg: Any, label: str) -> Disposer:
        await self._ensure_registry()
        restore_id = await _evaluate(target, script, arg, action=label)
        return self._disposer(int(restore_id), label)

    async def images(self, root: NodeRef) -> Sequence[PlaywrightImageNode]:
        try:
            handles = await root.query_selector_all("img")
        except PlaywrightError as exc:
            raise _wrap(exc, "list images") from exc
        return [PlaywrightImageNode(handle) for handle in handles]

    async def videos(self, root: NodeRef) -> Sequence[PlaywrightVideoNode]:
        try:
            handles = await root.query_selector_all("video")
        except PlaywrightError as exc:
            raise _wrap(exc, "list videos") from exc
        return [PlaywrightVideoNode(handle) for handle in handles]

    async def lock_layout(self) -> LayoutState:
        data = await _evaluate(self._page, _LOCK_LAYOUT_JS, action="lock layout")
        return LayoutState(**data)

    async def unlock_layout(self, state: LayoutState) -> None:
        payload = {
            "scroll_x": state.scroll_x,
            "scroll_y": state.scroll_y,
            "html_overflow": state.html_overflow,
            "body_overflow": state.body_overflow,
            "body_width": state.body_width,
            "body_height": state.body_height,
        }
        await _evaluate(self._page, _UNLOCK_LAYOUT_JS, payload, action="unlock layout")

    async def normalize_root(self, root: NodeRef, min_width: int) -> RootState:
        data = await _evaluate(root, _NORMALIZE_ROOT_JS, [min_width, ROOT_MARKER_ATTR], action="normalize root")
        return RootState(width=data["width"], min_width=data["min_width"], marker=data["marker"])

    async def restore_root(self, root: NodeRef, state: RootState) -> None:
        payload = {"width": state.width, "min_width": state.min_width, "marker": state.marker}
        await _evaluate(root, _RESTORE_ROOT_JS, [payload, ROOT_MARKER_ATTR], action="restore root")

    async def animation_frames(self, count: int) -> None:
        await _evaluate(self._page, _ANIMATION_FRAMES_JS, count, action="wait animation frames")

    async def wait_images_decoded(self, root: NodeRef) -> None:
        await _evaluate(root, _WAIT_IMAGES_JS, action="wait for image decode")

    async def wait_fonts_ready(self, root: NodeRef) -> None:
        await _evaluate(self._page, _WAIT_FONTS_JS, action="wait for fonts")

    async def create_object_url(self, payload: bytes, content_type: str) -> str:
        encoded = base64.b64encode(payload).decode("ascii")
        return str(await _evaluate(self._page, _CREATE_OBJECT_URL_JS, [encoded, content_type], action="create object URL"))

    async def revoke_object_url(self, url: str) -> None:
        await _evaluate(self._page, "(url) => URL.revokeObjectURL(url)", url, action="revoke object URL")

    async def font_usage(self, root: NodeRef) -> FontUsage:
        data = await _evaluate(root, _FONT_USAGE_JS, action="collect font usage")
        try:
            families = frozenset(str(name) for name in data["families"])
            sheets = tuple(
                StylesheetSource(href=item.get("href"), text=item.get("text")) for item in data["stylesheets"]
            )
            base_url = str(data.get("base_url") or self._page.url)
        except (KeyError, TypeError, AttributeError) as exc:
            raise FontEmbedError(f"unexpected font usage payload: {exc}") from exc
        return FontUsage(families=families, stylesheets=sheets, base_url=base_url)

    async def capabilities(self) -> RuntimeCapabilities:
        data = await _evaluate(self._page, _CAPABILITIES_JS, action="read capabilities")
        browser = self._page.context.browser
        engine = browser.browser_type.name if browser is not None else ""
        return RuntimeCapabilities(
            engine=engine,
            user_agent=str(data.get("user_agent", "")),
            device_pixel_ratio=float(data.get("device_pixel_ratio", 1.0)),
        )

    async def inject_style(self, css: str) -> Disposer:
        return await self.register_mutation(self._page, _INJECT_STYLE_JS, css, "font style")

    async def hide_matching(self, root: NodeRef, selector: str) -> Disposer:
        return await self.register_mutation(root, _HIDE_MATCHING_JS, selector, "excluded nodes")

    async def replace_broken_images(self, root: NodeRef, placeholder: str) -> Disposer:
        return await self.register_mutation(root, _REPLACE_BROKEN_JS, placeholder, "broken images")

    async def cache_bust_images(self, root: NodeRef, token: str) -> Disposer:
        return await self.register_mutation(root, _CACHE_BUST_JS, token, "cache-busted images")

    async def screenshot_element(self, root: NodeRef, *, background_color: str) -> bytes:
        restore = await self.register_mutation(root, _SET_BACKGROUND_JS, background_color, "root background")
        try:
            return await root.screenshot(type="png", animations="disabled")
        except PlaywrightError as exc:
            raise _wrap(exc, "element screenshot") from exc
        finally:
            await restore()

    async def serialize_clone(self, root: NodeRef, exclude_selector: str) -> CloneDocument:
        data = await _evaluate(root, _SERIALIZE_CLONE_JS, [exclude_selector, CLONE_ROOT_ATTR], action="serialize clone")
        return CloneDocument(
            html=data["html"],
            width=int(data["width"]),
            height=int(data["height"]),
            base_url=data["base_url"],
        )

    async def render_clone(self, clone: CloneDocument, *, font_css: str, scale: float, background_color: str) -> bytes:
        browser = self._page.context.browser
        if browser is None:
            raise DomOperationError("clone rendering needs a launched browser")
        context: Optional[BrowserContext] = None
        try:
            context = await browser.new_context(
                device_scale_factor=scale,
                viewport={"width": max(clone.width, 1), "height": max(clone.height, 1)},
            )
            page = await context.new_page()
            await page.set_content(clone.html, wait_until="load")
            css = f"[{CLONE_ROOT_ATTR}] {{ background-color: {background_color}; }}"
            if font_css:
                css = font_css + "\n" + css
            await page.add_style_tag(content=css)
            await page.evaluate(_WAIT_FONTS_JS)
            element = await page.query_selector(f"[{CLONE_ROOT_ATTR}]")
            if element is None:
                raise DomOperationError("clone root missing from rendered document")
            return await element.screenshot(type="png", animations="disabled")
        except PlaywrightError as exc:
            raise _wrap(exc, "clone render") from exc
        finally:
            if context is not None:
                await context.close()


class BrowserSession:
    """
    Launch a browser and open pages with a device scale factor matching the export pixel ratio.

    Use as an async context manager; everything launched is closed on exit.
    """

    def __init__(self, config: BrowserConfig, *, pixel_ratio: float = 1.0) -> None:
        self._config = config
        self._pixel_ratio = pixel_ratio
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def __aenter__(self) -> "BrowserSession":
        self._playwright = await async_playwright().start()
        launcher = getattr(self._playwright, self._config.engine)
        logger.debug("Launching %s (headless=%s)", self._config.engine, self._config.headless)
        self._browser = await launcher.launch(headless=self._config.headless)
        self._context = await self._browser.new_context(
            device_scale_factor=self._pixel_ratio,
            viewport={"width": self._config.viewport_width, "height": self._config.viewport_height},
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._context is not None:
            await self._context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._context = self._browser = self._playwright = None

    async def open(self, url: str) -> PlaywrightCapturePage:
        if self._context is None:
            raise RuntimeError("BrowserSession is not started")
        page = await self._context.new_page()
        await page.goto(
            url,
            wait_until=self._config.wait_until,
            timeout=self._config.navigation_timeout_seconds * 1000,
        )
        logger.info("Opened %s", page.url)
        return PlaywrightCapturePage(page)


class SyncGroupBinding:
    """
    Page events for one sync group, delivered in order to its :class:`PhaseSynchronizer`.

    Browser callbacks only enqueue; a single consumer task applies them.
    """

    def __init__(self, page: PlaywrightCapturePage, synchronizer: PhaseSynchronizer) -> None:
        self.page = page
        self.synchronizer = synchronizer
        self._events: "asyncio.Queue[tuple[str, Any]]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._restore: Optional[Disposer] = None

    def on_ready(self, key: str) -> None:
        self._events.put_nowait(("ready", key))

    def on_visibility(self, ratio: float) -> None:
        self._events.put_nowait(("visibility", float(ratio)))

    def start(self, restore: Disposer) -> None:
        self._restore = restore
        self._consumer = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            kind, value = await self._events.get()
            try:
                if kind == "ready":
                    await self.synchronizer.notify_ready(value)
                else:
                    await self.synchronizer.update_visibility(value)
            except DomOperationError as exc:
                logger.warning("Sync %s event failed: %s", kind, exc)

    async def close(self) -> None:
        """Detach page listeners and unmount the group; safe to call repeatedly."""

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        await self.synchronizer.unmount()
        restore, self._restore = self._restore, None
        if restore is not None:
            try:
                await restore()
            except DomOperationError as exc:
                logger.warning("Detaching sync listeners failed: %s", exc)


async def attach_sync_group(
    page: PlaywrightCapturePage,
    container_selector: str,
    policy: Optional[SyncPolicy] = None,
    *,
    sources: Optional[Mapping[int, Optional[str]]] = None,
) -> SyncGroupBinding:
    """
    Register the ``video[data-sync-key]`` elements under ``container_selector`` as one sync group.

    Members are ordered by ascending key, so the lowest key is the master. When
    ``sources`` (key -> video source or ``None``) is given, only keys with a source join.
    """

    policy = policy or SyncPolicy()
    container = await page.query_root(container_selector)
    if container is None:
        raise DomOperationError(f"sync container {container_selector!r} not found")
    try:
        handles = await container.query_selector_all(f"video[{SYNC_KEY_ATTR}]")
    except PlaywrightError as exc:
        raise _wrap(exc, "list sync videos") from exc

    keyed: Dict[str, ElementHandle] = {}
    for handle in handles:
        key = await handle.get_attribute(SYNC_KEY_ATTR)
        if key:
            keyed[key] = handle
    order = order_sync_members(keyed, sources)
    members = {key: PlaywrightVideoMember(keyed[key]) for key in order}
    synchronizer = PhaseSynchronizer(
        members,
        policy,
        frame_wait=lambda: page.animation_frames(1),
    )
    binding = SyncGroupBinding(page, synchronizer)

    suffix = next(_binding_ids)
    ready_name = f"__recapSyncReady{suffix}"
    visible_name = f"__recapSyncVisible{suffix}"
    try:
        await page.page.expose_function(ready_name, binding.on_ready)
        await page.page.expose_function(visible_name, binding.on_visibility)
    except PlaywrightError as exc:
        raise _wrap(exc, "expose sync callbacks") from exc
    restore = await page.register_mutation(
        container,
        _ATTACH_SYNC_JS,
        [ready_name, visible_name, SYNC_KEY_ATTR, policy.visibility_threshold],
        "sync listeners",
    )
    binding.start(restore)
    logger.info("Attached sync group of %d video(s) under %s", len(members), container_selector)
    return binding
