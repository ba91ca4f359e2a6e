"""Cross-origin image inlining through a same-origin relay."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urljoin, urlsplit

import httpx

from src.datatypes import InlineConfig, InlineMode

from .cache import CacheEntry, ResourceCache
from .dom import BLOB_URL_PREFIX, DATA_URL_PREFIX, CapturePage, ImageNode, ImageState, NodeRef
from .errors import DomOperationError, RelayFetchError
from .handles import TemporaryHandles
from .net import BackoffError, httpx_get_with_backoff, redact_url_for_logs
from .scope import DisposerList

__all__ = [
    "IMAGE_PLACEHOLDER",
    "InlineReport",
    "ResourceInliner",
    "origin_of",
    "resolve_upstream",
]

logger = logging.getLogger(__name__)

# 80x80 neutral grey square
IMAGE_PLACEHOLDER = (
    "data:image/svg+xml;base64,PHN2ZyB3aWR0aD0iODAiIGhlaWdodD0iODAiIHZpZXdCb3g9IjAgMCA4MCA4MCIgZmls"
    "bD0ibm9uZSIgeG1sbnM9Imh0dHA6Ly93d3cudzMub3JnLzIwMDAvc3ZnIj48cmVjdCB3aWR0aD0iODAiIGhlaWdodD0i"
    "ODAiIGZpbGw9IiNFNUU4RUIiLz48L3N2Zz4="
)


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for ``url`` (lower-cased), or ``""`` when it has none."""

    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def resolve_upstream(
    source: str,
    page_origin: str,
    *,
    resize_path: str = "/_next/image",
    resize_param: str = "url",
) -> Optional[str]:
    """
    Return the upstream URL that must be inlined for ``source``, or ``None`` to leave it.

    ``data:`` and ``blob:`` sources are already local. Same-origin sources are left alone
    unless they go through the host's resize indirection, in which case the wrapped
    upstream URL is unwrapped and resolved against the page origin. Any other absolute
    source on a different origin is returned unchanged.
    """

    if not source or source.startswith((DATA_URL_PREFIX, BLOB_URL_PREFIX)):
        return None
    absolute = urljoin(page_origin + "/", source) if page_origin else source
    parts = urlsplit(absolute)
    if parts.scheme not in ("http", "https"):
        return None
    if origin_of(absolute) != page_origin.lower():
        return absolute
    if resize_path and parts.path == resize_path:
        wrapped = parse_qs(parts.query).get(resize_param)
        if wrapped and wrapped[0]:
            return urljoin(page_origin + "/", wrapped[0])
    return None


@dataclass
class InlineReport:
    """Outcome of one inlining pass."""

    inlined: int = 0
    placeholders: int = 0
    skipped: int = 0
    originals: Dict[int, ImageState] = field(default_factory=dict)


class ResourceInliner:
    """
    Rewrite externally sourced images in a subtree to local object URLs.

    Each rewritten element has its original state recorded (and a restoring disposer
    registered) before it is touched. Failed fetches degrade that one element to
    :data:`IMAGE_PLACEHOLDER` and cache the failure under the same key.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: ResourceCache,
        config: InlineConfig,
    ) -> None:
        self._client = client
        self._cache = cache
        self._config = config

    def relay_endpoint(self, page_origin: str) -> str:
        base = self._config.relay_base_url.rstrip("/") or page_origin
        return f"{base}{self._config.relay_path}"

    async def inline(
        self,
        page: CapturePage,
        root: NodeRef,
        disposers: DisposerList,
        handles: TemporaryHandles,
    ) -> InlineReport:
        """Inline every eligible image under ``root``; mutations settle before returning."""

        report = InlineReport()
        nodes = list(await page.images(root))
        originals: List[tuple[ImageNode, ImageState]] = []

        async def _restore_all() -> None:
            while originals:
                node, state = originals.pop()
                try:
                    await node.restore_state(state)
                except DomOperationError as exc:
                    logger.warning("Could not restore image %s: %s", state.effective_source, exc)

        disposers.add(_restore_all)

        async def _convert(index: int, node: ImageNode) -> None:
            state = await node.read_state()
            source = state.effective_source
            upstream = resolve_upstream(
                source,
                page.origin,
                resize_path=self._config.resize_path,
                resize_param=self._config.resize_param,
            )
            if upstream is None:
                report.skipped += 1
                return
            entry = await self._cache.fetch_once(source, lambda: self._fetch(upstream, page.origin))
            replacement = IMAGE_PLACEHOLDER
            if not entry.placeholder:
                try:
                    replacement = await handles.create(entry.payload, entry.content_type)
                except DomOperationError as exc:
                    logger.warning("Object URL creation failed for %s: %s", redact_url_for_logs(source), exc)
            originals.append((node, state))
            report.originals[index] = state
            await node.apply_inlined_source(replacement)
            if replacement == IMAGE_PLACEHOLDER:
                report.placeholders += 1
            else:
                report.inlined += 1

        results = await asyncio.gather(
            *(_convert(index, node) for index, node in enumerate(nodes)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        logger.info(
            "Inlined %d image(s), %d placeholder(s), %d left untouched",
            report.inlined,
            report.placeholders,
            report.skipped,
        )
        return report

    async def _fetch(self, upstream: str, page_origin: str) -> CacheEntry:
        try:
            return await self._fetch_payload(upstream, page_origin)
        except (RelayFetchError, BackoffError, httpx.HTTPError) as exc:
            logger.warning("Image relay failed for %s: %s", redact_url_for_logs(upstream), exc)
            return CacheEntry.failed()

    async def _fetch_payload(self, upstream: str, page_origin: str) -> CacheEntry:
        if self._config.mode is InlineMode.DIRECT:
            path, params = upstream, {}
        else:
            path = self.relay_endpoint(page_origin)
            params = {self._config.relay_param: upstream}
        response = await httpx_get_with_backoff(
            self._client,
            path,
            params,
            retries=self._config.retries,
        )
        if not response.is_success:
            raise RelayFetchError(f"relay returned status {response.status_code}")
        content_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            raise RelayFetchError(f"relay returned non-image content type {content_type or '(none)'}")
        payload = response.content
        if not payload:
            raise RelayFetchError("relay returned an empty body")
        return CacheEntry(payload=payload, content_type=content_type)
