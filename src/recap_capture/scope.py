"""Scoped acquisition helpers: every temporary DOM mutation registers a disposer."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List

__all__ = ["Disposer", "DisposerList"]

logger = logging.getLogger(__name__)

Disposer = Callable[[], Awaitable[None]]


class DisposerList:
    """
    Ordered collection of async disposers released last-in, first-out.

    :meth:`dispose` runs every disposer exactly once even when some of them fail; a
    failing step is logged and skipped. Calling :meth:`dispose` again is a no-op until
    new disposers are added.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._disposers: List[Disposer] = []

    def add(self, disposer: Disposer) -> None:
        self._disposers.append(disposer)

    def __len__(self) -> int:
        return len(self._disposers)

    async def dispose(self) -> int:
        """Run and drop all registered disposers; return how many failed."""

        failures = 0
        while self._disposers:
            disposer = self._disposers.pop()
            try:
                await disposer()
            except Exception as exc:
                failures += 1
                logger.warning("Restoring %s state failed: %s", self.label, exc)
        return failures
