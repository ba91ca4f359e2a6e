from __future__ import annotations

from pathlib import Path
from typing import Callable

import httpx
import pytest
from click.testing import CliRunner

from src.datatypes import AppConfig
from tests.helpers.fake_dom import FakePage, RecordingNotifier

PNG_BYTES = b"\x89PNG\r\n\x1a\nrelayed"


@pytest.fixture
def runner() -> CliRunner:
    """Provide a Click runner configured for CLI smoke tests."""

    return CliRunner()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Default configuration writing captures under the test's temp directory."""

    cfg = AppConfig()
    cfg.capture.output_dir = str(tmp_path / "captures")
    return cfg


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


class RelayRecorder:
    """``httpx.MockTransport`` handler standing in for the same-origin image relay."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failing: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        upstream = request.url.params.get("url", str(request.url))
        if upstream in self.failing:
            return httpx.Response(502, text="upstream unavailable")
        return httpx.Response(200, content=PNG_BYTES, headers={"Content-Type": "image/png"})

    def upstreams(self) -> list[str]:
        return [request.url.params.get("url", "") for request in self.requests]


@pytest.fixture
def relay() -> RelayRecorder:
    return RelayRecorder()


@pytest.fixture
def client_factory(relay: RelayRecorder) -> Callable[[], httpx.AsyncClient]:
    """Build a client bound to the relay recorder; create it inside the running event loop."""

    def _factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(relay))

    return _factory
