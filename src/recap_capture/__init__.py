"""Snapshot export pipeline and multi-stream phase synchronizer for recap panels."""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
