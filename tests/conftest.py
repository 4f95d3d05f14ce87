"""Shared test fixtures."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from host_relay.config import Settings


@pytest.fixture(autouse=True)
def _clean_host_relay_env(monkeypatch):
    """Keep HOST_RELAY_* variables of the developer shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("HOST_RELAY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings.from_env(project_root=tmp_path)


@pytest.fixture()
def write_request(settings: Settings) -> Callable[[str, Any], Path]:
    """Drop a request document into the queue directory."""

    def _write(name: str, payload: Any) -> Path:
        path = settings.queue.queue_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        text = payload if isinstance(payload, str) else json.dumps(payload)
        path.write_text(text, "utf-8")
        return path

    return _write


class FakeTimeline:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def timeline() -> FakeTimeline:
    return FakeTimeline()
