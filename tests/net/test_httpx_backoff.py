from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, Mapping, cast

import httpx
import pytest
from _pytest.logging import LogCaptureFixture

from src.recap_capture import net


class StubAsyncClient:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, object]]] = []

    async def get(self, path: str, params: Mapping[str, object]) -> httpx.Response:
        self.calls.append((path, dict(params)))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return cast(httpx.Response, item)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, duration: float) -> None:
        self.calls.append(duration)


class _FakeResponse:
    def __init__(self, status_code: int, headers: Mapping[str, str] | None = None) -> None:
        self.status_code = status_code
        self.headers = dict(headers or {})


def _response(status_code: int, *, retry_after: str | None = None) -> _FakeResponse:
    headers = {"Retry-After": retry_after} if retry_after is not None else None
    return _FakeResponse(status_code, headers)


def _run(coro: Coroutine[Any, Any, httpx.Response]) -> httpx.Response:
    return asyncio.run(coro)


def test_backoff_retries_then_succeeds() -> None:
    stub = StubAsyncClient([_response(503), _response(200)])
    sleeper = SleepRecorder()

    response = _run(
        net.httpx_get_with_backoff(
            cast(httpx.AsyncClient, stub),
            "https://recap.example.com/api/image-proxy",
            {"url": "https://cdn.example.com/a.png"},
            retries=2,
            sleep=sleeper,
        )
    )

    assert response.status_code == 200
    assert sleeper.calls == [0.5]
    assert len(stub.calls) == 2
    assert stub.calls[0][1] == {"url": "https://cdn.example.com/a.png"}


def test_backoff_exhausts_budget_without_trailing_sleep() -> None:
    stub = StubAsyncClient([_response(503, retry_after="1"), _response(503)])
    sleeper = SleepRecorder()

    with pytest.raises(net.BackoffError) as excinfo:
        _run(
            net.httpx_get_with_backoff(
                cast(httpx.AsyncClient, stub),
                "https://recap.example.com/api/image-proxy",
                {},
                retries=1,
                sleep=sleeper,
            )
        )

    assert "503" in str(excinfo.value)
    assert sleeper.calls == [1.0]
    assert len(stub.calls) == 2


def test_zero_retries_calls_endpoint_once() -> None:
    stub = StubAsyncClient([_response(502)])
    sleeper = SleepRecorder()

    with pytest.raises(net.BackoffError):
        _run(
            net.httpx_get_with_backoff(
                cast(httpx.AsyncClient, stub),
                "https://recap.example.com/api/image-proxy",
                {},
                retries=0,
                sleep=sleeper,
            )
        )

    assert len(stub.calls) == 1
    assert sleeper.calls == []


def test_non_retryable_status_is_returned() -> None:
    stub = StubAsyncClient([_response(404)])

    response = _run(
        net.httpx_get_with_backoff(cast(httpx.AsyncClient, stub), "https://recap.example.com/x", {}, retries=3)
    )

    assert response.status_code == 404
    assert len(stub.calls) == 1


def test_network_error_is_reraised_after_budget() -> None:
    request = httpx.Request("GET", "https://recap.example.com/x")
    stub = StubAsyncClient([httpx.ConnectError("boom", request=request), httpx.ConnectError("boom", request=request)])
    sleeper = SleepRecorder()

    with pytest.raises(httpx.ConnectError):
        _run(
            net.httpx_get_with_backoff(
                cast(httpx.AsyncClient, stub),
                "https://recap.example.com/x",
                {},
                retries=1,
                initial_backoff=0.25,
                sleep=sleeper,
            )
        )

    assert sleeper.calls == [0.25]


def test_backoff_invokes_callback_before_sleep() -> None:
    stub = StubAsyncClient([_response(503), _response(200)])
    sleeper = SleepRecorder()
    recorded: list[tuple[float, int]] = []

    async def on_backoff(delay: float, attempt_index: int) -> None:
        recorded.append((delay, attempt_index))

    _run(
        net.httpx_get_with_backoff(
            cast(httpx.AsyncClient, stub),
            "https://recap.example.com/api/image-proxy",
            {},
            retries=2,
            initial_backoff=0.2,
            sleep=sleeper,
            on_backoff=on_backoff,
        )
    )

    assert recorded == [(0.2, 1)]
    assert sleeper.calls == [0.2]


def test_backoff_logs_success(caplog: LogCaptureFixture) -> None:
    stub = StubAsyncClient([_response(200)])
    caplog.set_level(logging.INFO, logger="src.recap_capture.net")

    _run(net.httpx_get_with_backoff(cast(httpx.AsyncClient, stub), "https://recap.example.com/x", {}))

    assert any("completed after 1 attempt" in record.getMessage() for record in caplog.records)


def test_retry_after_http_date_is_clamped() -> None:
    stub = StubAsyncClient([_response(429, retry_after="Wed, 21 Oct 2015 07:28:00 GMT"), _response(200)])
    sleeper = SleepRecorder()

    _run(
        net.httpx_get_with_backoff(
            cast(httpx.AsyncClient, stub),
            "https://recap.example.com/x",
            {},
            retries=1,
            sleep=sleeper,
        )
    )

    assert sleeper.calls == [0.1]
