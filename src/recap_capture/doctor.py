"""Readiness checks for the capture CLI: browser runtime, config, output, network settings."""

from __future__ import annotations

import importlib.util
import json
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Final, Literal, Optional, TypedDict

import click

from src.datatypes import AppConfig, InlineMode

DoctorStatus = Literal["pass", "fail", "warn"]


class DoctorCheck(TypedDict):
    """Structured result for a doctor check."""

    id: str
    label: str
    status: DoctorStatus
    message: str


_DOCTOR_STATUS_ICONS: Final[dict[DoctorStatus, str]] = {
    "pass": "✅",
    "fail": "❌",
    "warn": "⚠️",
}


def playwright_browsers_root() -> Path:
    """Directory Playwright installs browser builds into."""

    override = os.environ.get("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override).expanduser()
    if os.name == "nt":
        return Path(os.environ.get("LOCALAPPDATA", Path.home())) / "ms-playwright"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "ms-playwright"
    return Path.home() / ".cache" / "ms-playwright"


def _is_writable_dir(path: Path) -> bool:
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK)


def collect_checks(
    config: AppConfig,
    config_path: Optional[Path],
    *,
    config_issue: Optional[str] = None,
    config_invalid: bool = False,
    browsers_root: Optional[Path] = None,
) -> tuple[list[DoctorCheck], list[str]]:
    """Generate doctor check results and auxiliary notes."""

    notes: list[str] = []
    checks: list[DoctorCheck] = []

    if config_issue:
        config_status: DoctorStatus = "fail" if config_invalid else "warn"
        config_message = config_issue
    elif config_path is None:
        config_status = "pass"
        config_message = "No config file given; using built-in defaults."
    else:
        config_status = "pass"
        config_message = f"Loaded {config_path}."
    checks.append({"id": "config", "label": "Configuration", "status": config_status, "message": config_message})

    playwright_available = importlib.util.find_spec("playwright") is not None
    checks.append({
        "id": "playwright",
        "label": "Playwright import",
        "status": "pass" if playwright_available else "fail",
        "message": (
            "playwright module available."
            if playwright_available
            else "playwright not found. Install with 'pip install playwright'."
        ),
    })

    engine = config.browser.engine
    root = browsers_root if browsers_root is not None else playwright_browsers_root()
    installed = root.is_dir() and any(entry.name.startswith(f"{engine}-") for entry in root.iterdir())
    if installed:
        engine_status: DoctorStatus = "pass"
        engine_message = f"{engine} build found under {root}."
    else:
        engine_status = "fail" if playwright_available else "warn"
        engine_message = f"No {engine} build under {root}. Run 'playwright install {engine}'."
    checks.append({"id": "engine", "label": "Browser engine", "status": engine_status, "message": engine_message})

    output_dir = Path(config.capture.output_dir).expanduser()
    if _is_writable_dir(output_dir):
        out_status: DoctorStatus = "pass"
        out_message = f"{output_dir} is writable."
    else:
        out_status = "fail"
        out_message = f"{output_dir} is not writable. Set [capture].output_dir or adjust permissions."
    checks.append({"id": "output", "label": "Output directory", "status": out_status, "message": out_message})

    inline = config.inline
    if inline.mode is InlineMode.RELAY:
        relay_status: DoctorStatus = "pass"
        base = inline.relay_base_url or "<page origin>"
        relay_message = f"Cross-origin images go through {base}{inline.relay_path}?{inline.relay_param}=..."
    else:
        relay_status = "warn"
        relay_message = "[inline].mode=direct fetches upstream images without the relay."
    checks.append({"id": "relay", "label": "Image relay", "status": relay_status, "message": relay_message})

    if engine in config.raster.incompatible_engines:
        notes.append(f"{engine} skips the element-screenshot strategy; captures use the clone renderer.")
    if not config.fonts.enabled:
        notes.append("Font embedding is disabled; text renders with whatever fonts the page has loaded.")

    return checks, notes


def emit_results(
    checks: Sequence[DoctorCheck],
    notes: Sequence[str],
    *,
    json_mode: bool,
    config_path: Optional[Path],
) -> None:
    """Render doctor results either as text table or JSON payload."""

    if json_mode:
        payload = {
            "config_path": str(config_path) if config_path else None,
            "checks": list(checks),
            "notes": list(notes),
        }
        click.echo(json.dumps(payload, indent=2))
        return

    width = max((len(check["label"]) for check in checks), default=0)
    for check in checks:
        icon = _DOCTOR_STATUS_ICONS.get(check["status"], "•")
        label = check["label"].ljust(width)
        click.echo(f"{icon} {label} — {check['message']}")
    if notes:
        click.echo("Notes:")
        for note in notes:
            click.echo(f"  - {note}")


__all__ = ["DoctorCheck", "DoctorStatus", "collect_checks", "emit_results", "playwright_browsers_root"]
