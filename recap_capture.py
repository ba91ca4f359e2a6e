"""CLI entry point for snapshot exports and video sync checks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, cast

import click
from playwright.async_api import Error as PlaywrightError
from rich.console import Console
from rich.logging import RichHandler

import src.recap_capture.doctor as doctor_module
from src.config_loader import ConfigError, load_config
from src.datatypes import AppConfig
from src.recap_capture.browser import BrowserSession, attach_sync_group
from src.recap_capture.capture import CaptureOptions, CaptureOrchestrator
from src.recap_capture.env_flags import CONFIG_ENV_VAR, verbose_requested
from src.recap_capture.errors import CaptureError
from src.recap_capture.naming import build_export_filename
from src.recap_capture.net import build_async_client
from src.recap_capture.sync import SyncPhase, SyncPolicy
from src.recap_capture.tiers import build_sync_sources, parse_tier_assignments

logger = logging.getLogger("recap_capture")

_stderr = Console(stderr=True)


def _configure_logging(verbose: bool) -> None:
    handler = RichHandler(console=_stderr, show_path=False, rich_tracebacks=verbose)
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_app_config(config_path: Optional[str]) -> AppConfig:
    if not config_path:
        return AppConfig()
    try:
        return load_config(Path(config_path).expanduser())
    except FileNotFoundError:
        logger.warning("Config file %s not found; using defaults", config_path)
        return AppConfig()
    except ConfigError as exc:
        raise click.ClickException(f"Config parsing failed: {exc}") from exc


def _context_config(ctx: click.Context) -> AppConfig:
    params = cast(Dict[str, Any], ctx.ensure_object(dict))
    return _load_app_config(params.get("config_path"))


@click.group()
@click.option(
    "--config",
    "config_path",
    envvar=CONFIG_ENV_VAR,
    default=None,
    help=f"Path to a TOML config file (defaults to ${CONFIG_ENV_VAR}, then built-in defaults).",
)
@click.option("--verbose", is_flag=True, help="Show debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """Export live page panels to images and check synchronized video groups."""

    verbose = verbose or verbose_requested()
    _configure_logging(verbose)
    params = cast(Dict[str, Any], ctx.ensure_object(dict))
    params.update({"config_path": config_path, "verbose": verbose})
    ctx.obj = params


async def _run_capture(cfg: AppConfig, url: str, selector: str, options: CaptureOptions) -> Optional[Path]:
    pixel_ratio = options.pixel_ratio or cfg.capture.pixel_ratio
    async with BrowserSession(cfg.browser, pixel_ratio=pixel_ratio) as session:
        page = await session.open(url)
        root = await page.query_root(selector)
        if root is None:
            raise click.ClickException(f"No element matches {selector!r} on {page.url}")
        async with build_async_client(cfg.inline.timeout_seconds) as client:
            orchestrator = CaptureOrchestrator(page, cfg, client)
            return await orchestrator.save_as_image(root, options)


@main.command("capture")
@click.argument("url")
@click.option("--selector", default=None, help="CSS selector of the panel to export (default [capture].root_selector).")
@click.option("--nickname", default="recap", show_default=True, help="Name used in the default file name.")
@click.option("--file-name", "file_name", default=None, help="Output file name (default from [capture].file_name_template).")
@click.option("--output", "output_dir", default=None, help="Override [capture].output_dir.")
@click.option(
    "--pixel-ratio",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override [capture].pixel_ratio.",
)
@click.option("--background", default=None, help="Override [capture].background_color.")
@click.pass_context
def capture_command(
    ctx: click.Context,
    url: str,
    selector: Optional[str],
    nickname: str,
    file_name: Optional[str],
    output_dir: Optional[str],
    pixel_ratio: Optional[float],
    background: Optional[str],
) -> None:
    """Export the panel at URL to an image file."""

    cfg = _context_config(ctx)
    if output_dir:
        cfg.capture.output_dir = output_dir
    name = file_name or build_export_filename(nickname, cfg.capture.file_name_template)
    options = CaptureOptions(file_name=name, background_color=background, pixel_ratio=pixel_ratio)
    try:
        target = asyncio.run(_run_capture(cfg, url, selector or cfg.capture.root_selector, options))
    except (PlaywrightError, CaptureError) as exc:
        raise click.ClickException(str(exc)) from exc
    if target is None:
        raise click.exceptions.Exit(1)
    click.echo(str(target))


async def _run_sync(
    cfg: AppConfig,
    url: str,
    container: str,
    duration: float,
    sources: Optional[Dict[int, Optional[str]]] = None,
) -> tuple[SyncPhase, int, float]:
    policy = SyncPolicy.from_config(cfg.sync)
    async with BrowserSession(cfg.browser) as session:
        page = await session.open(url)
        element = await page.query_root(container)
        if element is None:
            raise click.ClickException(f"No element matches {container!r} on {page.url}")
        await element.scroll_into_view_if_needed()
        binding = await attach_sync_group(page, container, policy, sources=sources)
        try:
            await asyncio.sleep(duration)
            drift = await binding.synchronizer.max_drift()
            state = binding.synchronizer.state
            return state.phase, len(state.members), drift
        finally:
            await binding.close()


@main.command("sync")
@click.argument("url")
@click.option("--container", default="[data-sync-group]", show_default=True, help="CSS selector of the video group.")
@click.option(
    "--duration",
    type=click.FloatRange(min=0, min_open=True),
    default=5.0,
    show_default=True,
    help="Seconds to let the group run before measuring drift.",
)
@click.option(
    "--tier",
    "tiers",
    multiple=True,
    metavar="KEY=TIER",
    help="Tier record for a sync slot (e.g. 3=Gold, 22= for no data); only slots with a tier video join the group.",
)
@click.pass_context
def sync_command(ctx: click.Context, url: str, container: str, duration: float, tiers: tuple[str, ...]) -> None:
    """Attach a synchronizer to the video group at URL and report the drift it holds."""

    cfg = _context_config(ctx)
    try:
        sources = build_sync_sources(parse_tier_assignments(tiers)) if tiers else None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--tier") from exc
    try:
        phase, members, drift = asyncio.run(_run_sync(cfg, url, container, duration, sources))
    except (PlaywrightError, CaptureError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"phase={phase.value} members={members} max_drift_ms={drift * 1000:.1f}")
    if members >= 2 and drift > cfg.sync.drift_tolerance_seconds:
        raise click.exceptions.Exit(1)


@main.command("doctor")
@click.option("--json", "json_mode", is_flag=True, help="Emit machine-readable diagnostics.")
@click.pass_context
def doctor(ctx: click.Context, json_mode: bool) -> None:
    """Summarise runtime readiness without touching any page."""

    params = cast(Dict[str, Any], ctx.ensure_object(dict))
    config_override = params.get("config_path")
    config_path = Path(config_override).expanduser() if config_override else None

    config_issue: Optional[str] = None
    config_invalid = False
    cfg = AppConfig()
    if config_path is not None:
        try:
            cfg = load_config(config_path)
        except FileNotFoundError:
            config_issue = f"Config file not found at {config_path}; using defaults."
        except ConfigError as exc:
            config_issue = f"Config parsing failed: {exc}"
            config_invalid = True

    checks, notes = doctor_module.collect_checks(
        cfg,
        config_path,
        config_issue=config_issue,
        config_invalid=config_invalid,
    )
    doctor_module.emit_results(checks, notes, json_mode=json_mode, config_path=config_path)


if __name__ == "__main__":
    main()
