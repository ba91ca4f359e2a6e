# pyright: standard

"""Shared networking helpers for relay fetches with configurable retries/backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable
from urllib.parse import urlsplit

import httpx

__all__ = [
    "BackoffError",
    "build_async_client",
    "httpx_get_with_backoff",
    "redact_url_for_logs",
]

logger = logging.getLogger(__name__)

_DEFAULT_STATUS_FORCELIST = frozenset({429, 500, 502, 503, 504})
_USER_AGENT = "recap-capture/0.4"


class BackoffError(RuntimeError):
    """Raised when network retries are exhausted."""


def build_async_client(timeout: float = 15.0) -> httpx.AsyncClient:
    """Return an ``httpx.AsyncClient`` with project defaults."""

    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        follow_redirects=True,
        headers={"User-Agent": _USER_AGENT},
    )


async def httpx_get_with_backoff(
    client: httpx.AsyncClient,
    path: str,
    params: Mapping[str, object],
    *,
    retries: int = 3,
    initial_backoff: float = 0.5,
    max_backoff: float = 4.0,
    retry_status: Iterable[int] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    on_backoff: Callable[[float, int], Awaitable[None]] | None = None,
) -> httpx.Response:
    """Perform a GET request with exponential backoff for transient status codes."""

    retry_codes = frozenset(retry_status) if retry_status else _DEFAULT_STATUS_FORCELIST
    backoff = max(0.1, initial_backoff)
    upper_backoff = max(0.1, max_backoff)
    sleep_impl = sleep or asyncio.sleep
    last_network_error: httpx.RequestError | None = None
    last_response: httpx.Response | None = None
    attempts = max(0, retries) + 1

    for attempt in range(1, attempts + 1):
        try:
            response = await client.get(path, params=params)
        except httpx.RequestError as exc:
            last_network_error = exc
            last_response = None
            delay = backoff
        else:
            status = response.status_code
            if status not in retry_codes:
                logger.info(
                    "GET %s completed after %d attempt%s (status %d)",
                    redact_url_for_logs(path),
                    attempt,
                    "" if attempt == 1 else "s",
                    status,
                )
                return response
            last_response = response
            delay = _retry_delay_from_response(response, backoff, upper_backoff)

        if attempt == attempts:
            break
        if on_backoff is not None:
            await on_backoff(delay, attempt)
        await sleep_impl(delay)
        backoff = min(backoff * 2, upper_backoff)

    if last_response is not None:
        raise BackoffError(f"Request failed with status {last_response.status_code}")
    if last_network_error is not None:
        raise last_network_error
    raise BackoffError("Request failed before receiving a response")


def redact_url_for_logs(url: str) -> str:
    """Return a safe identifier for URLs when logging relay or upstream endpoints."""

    try:
        parsed = urlsplit(url)
    except ValueError:
        return "url"
    if parsed.hostname:
        return parsed.hostname
    return parsed.path or "url"


def _retry_delay_from_response(response: httpx.Response, fallback: float, cap: float) -> float:
    """Seconds to wait before the next attempt; ``Retry-After`` may be delta-seconds or an HTTP date."""

    header = (response.headers.get("Retry-After") or "").strip()
    delay = fallback
    if header:
        try:
            delay = float(header)
        except ValueError:
            try:
                when = parsedate_to_datetime(header)
            except (TypeError, ValueError):
                when = None
            if when is not None:
                if when.tzinfo is None:
                    when = when.replace(tzinfo=timezone.utc)
                delay = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0.1, min(delay, cap))
