"""Export-scoped registry of temporary object URLs bound to cached payloads."""

from __future__ import annotations

import logging
from typing import List

from .dom import CapturePage
from .errors import DomOperationError

__all__ = ["TemporaryHandles"]

logger = logging.getLogger(__name__)


class TemporaryHandles:
    """Create object URLs on ``page`` and revoke every one of them when the export ends."""

    def __init__(self, page: CapturePage) -> None:
        self._page = page
        self._live: List[str] = []

    @property
    def live(self) -> tuple[str, ...]:
        return tuple(self._live)

    async def create(self, payload: bytes, content_type: str) -> str:
        url = await self._page.create_object_url(payload, content_type)
        self._live.append(url)
        return url

    async def revoke_all(self) -> None:
        """Revoke all live handles; safe to call repeatedly."""

        while self._live:
            url = self._live.pop()
            try:
                await self._page.revoke_object_url(url)
            except DomOperationError as exc:
                logger.warning("Failed to revoke %s: %s", url, exc)
