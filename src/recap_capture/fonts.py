"""Embeddable ``@font-face`` CSS for the fonts a capture root actually uses."""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urljoin

import httpx

from src.datatypes import FontConfig

from .cache import CacheEntry, ResourceCache
from .dom import DATA_URL_PREFIX, CapturePage, NodeRef
from .net import redact_url_for_logs

__all__ = [
    "FONT_CSS_CACHE_KEY",
    "FontEmbedResolver",
    "FontFace",
    "normalize_family",
    "parse_font_faces",
    "strip_local_sources",
]

logger = logging.getLogger(__name__)

FONT_CSS_CACHE_KEY = "font-embed-css"

_FONT_FACE_PATTERN = re.compile(r"@font-face\s*{([^}]*)}", re.IGNORECASE | re.DOTALL)
_URL_PATTERN = re.compile(r"url\(\s*(['\"]?)(.*?)\1\s*\)", re.IGNORECASE | re.DOTALL)
_FONT_TYPES = {
    ".woff2": "font/woff2",
    ".woff": "font/woff",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
}


@dataclass(frozen=True, slots=True)
class FontFace:
    family: str
    src: str
    declarations: tuple[tuple[str, str], ...]

    def render(self, src: str) -> str:
        body = "; ".join(
            f"{name}: {src if name == 'src' else value}" for name, value in self.declarations
        )
        return f"@font-face {{ {body}; }}"


def _split_top_level(text: str, separator: str) -> List[str]:
    """Split ``text`` on ``separator`` outside parentheses and quotes."""

    parts: List[str] = []
    depth = 0
    quote: Optional[str] = None
    current: List[str] = []
    for char in text:
        if quote:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        elif char == separator and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def normalize_family(name: str) -> str:
    return name.strip().strip("'\"").strip().lower()


def parse_font_faces(css_text: str) -> List[FontFace]:
    """Return every ``@font-face`` rule in ``css_text`` that declares a family and a source."""

    faces: List[FontFace] = []
    for match in _FONT_FACE_PATTERN.finditer(css_text):
        declarations: List[tuple[str, str]] = []
        for decl in _split_top_level(match.group(1), ";"):
            if ":" not in decl:
                continue
            name, value = decl.split(":", 1)
            declarations.append((name.strip().lower(), value.strip()))
        props = dict(declarations)
        family = props.get("font-family")
        src = props.get("src")
        if family and src:
            faces.append(FontFace(family=normalize_family(family), src=src, declarations=tuple(declarations)))
    return faces


def strip_local_sources(src: str) -> str:
    """Drop ``local(...)`` alternatives from a ``src`` descriptor value."""

    kept = [item for item in _split_top_level(src, ",") if not item.lower().startswith("local(")]
    return ", ".join(kept)


def _guess_font_type(url: str, header: str) -> str:
    path = url.split("?", 1)[0].split("#", 1)[0].lower()
    for suffix, mime in _FONT_TYPES.items():
        if path.endswith(suffix):
            return mime
    return header.split(";", 1)[0].strip() or "application/octet-stream"


class FontEmbedResolver:
    """
    Build one CSS blob of ``@font-face`` rules with font data embedded as ``data:`` URLs.

    The result is cached under :data:`FONT_CSS_CACHE_KEY`. Generation failures yield an
    empty string and are not cached.
    """

    def __init__(self, client: httpx.AsyncClient, cache: ResourceCache, config: FontConfig) -> None:
        self._client = client
        self._cache = cache
        self._config = config

    async def resolve(self, page: CapturePage, root: NodeRef) -> str:
        if not self._config.enabled:
            return ""
        cached = self._cache.get(FONT_CSS_CACHE_KEY)
        if cached is not None:
            return cached.payload.decode("utf-8")
        try:
            css = await self._generate(page, root)
        except Exception as exc:
            logger.warning("Font embedding failed, continuing with loaded fonts: %s", exc)
            return ""
        self._cache.put(FONT_CSS_CACHE_KEY, CacheEntry(payload=css.encode("utf-8"), content_type="text/css"))
        return css

    async def _generate(self, page: CapturePage, root: NodeRef) -> str:
        usage = await page.font_usage(root)
        if not usage.families:
            return ""
        sheets: List[tuple[str, str]] = []
        for sheet in usage.stylesheets:
            base = sheet.href or usage.base_url
            text = sheet.text
            if text is None and sheet.href:
                text = await self._fetch_stylesheet(sheet.href)
            if text:
                sheets.append((text, base))

        rules: List[str] = []
        embedded: Dict[str, Optional[str]] = {}
        for text, base in sheets:
            for face in parse_font_faces(text):
                if face.family not in usage.families:
                    continue
                src = strip_local_sources(face.src)
                if not src:
                    continue
                src = await self._embed_sources(src, base, embedded)
                if src:
                    rules.append(face.render(src))
        logger.info("Embedded %d @font-face rule(s) for %d font family name(s)", len(rules), len(usage.families))
        return "\n".join(rules)

    async def _fetch_stylesheet(self, href: str) -> Optional[str]:
        try:
            response = await self._client.get(href)
        except httpx.HTTPError as exc:
            logger.debug("Stylesheet %s unavailable: %s", redact_url_for_logs(href), exc)
            return None
        if not response.is_success:
            logger.debug("Stylesheet %s returned %d", redact_url_for_logs(href), response.status_code)
            return None
        return response.text

    async def _embed_sources(self, src: str, base: str, embedded: Dict[str, Optional[str]]) -> str:
        kept: List[str] = []
        for item in _split_top_level(src, ","):
            match = _URL_PATTERN.search(item)
            if match is None:
                continue
            url = match.group(2).strip()
            if url.startswith(DATA_URL_PREFIX):
                kept.append(item)
                continue
            absolute = urljoin(base, url)
            if absolute not in embedded:
                embedded[absolute] = await self._fetch_font(absolute)
            data_url = embedded[absolute]
            if data_url is None:
                continue
            kept.append(item[: match.start()] + f'url("{data_url}")' + item[match.end():])
        return ", ".join(kept)

    async def _fetch_font(self, url: str) -> Optional[str]:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("Font %s unavailable: %s", redact_url_for_logs(url), exc)
            return None
        if not response.is_success or not response.content:
            return None
        mime = _guess_font_type(url, response.headers.get("Content-Type", ""))
        encoded = base64.b64encode(response.content).decode("ascii")
        return f"data:{mime};base64,{encoded}"
