"""User-visible notices for capture outcomes."""

from __future__ import annotations

from typing import Optional, Protocol

from rich.console import Console
from rich.markup import escape

__all__ = ["FAILURE_MESSAGE", "ConsoleNotifier", "Notifier"]

FAILURE_MESSAGE = "Saving the image failed. Please try again."


class Notifier(Protocol):
    def failure(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...


class ConsoleNotifier:
    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console(stderr=True)

    def failure(self, message: str) -> None:
        self._console.print(f"[red]✗[/red] {escape(message)}")

    def success(self, message: str) -> None:
        self._console.print(f"[green]✓[/green] {escape(message)}")
