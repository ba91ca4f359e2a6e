"""Process-lifetime cache for converted resources, keyed by source URL."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

__all__ = ["CacheEntry", "ResourceCache"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """
    Cached result of resolving one source.

    Attributes:
        payload (bytes): Raw binary payload; empty for placeholder entries.
        content_type (str): MIME type of ``payload``.
        placeholder (bool): ``True`` when the fetch failed and the neutral placeholder
            should be used instead of ``payload``.
    """

    payload: bytes = b""
    content_type: str = "application/octet-stream"
    placeholder: bool = False

    @classmethod
    def failed(cls) -> "CacheEntry":
        return cls(placeholder=True)


class ResourceCache:
    """
    Map of source key to :class:`CacheEntry` with no expiry beyond :meth:`clear`.

    :meth:`fetch_once` guarantees at most one loader runs per key at a time; concurrent
    callers for the same key await the in-flight load instead of starting a second one.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Task[CacheEntry]] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def put(self, key: str, value: CacheEntry) -> None:
        self._entries[key] = value

    def clear(self) -> None:
        logger.debug("Clearing %d cached resources", len(self._entries))
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def fetch_once(self, key: str, loader: Callable[[], Awaitable[CacheEntry]]) -> CacheEntry:
        """
        Return the cached entry for ``key``, running ``loader`` only on a miss.

        The loader's result is stored before any waiter resumes. Exceptions raised by the
        loader propagate to every waiter and nothing is cached.
        """

        cached = self._entries.get(key)
        if cached is not None:
            return cached
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, loader))
            self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _load(self, key: str, loader: Callable[[], Awaitable[CacheEntry]]) -> CacheEntry:
        try:
            entry = await loader()
            self._entries[key] = entry
            return entry
        finally:
            self._in_flight.pop(key, None)
