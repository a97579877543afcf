"""Shared test fixtures for strmsync."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Sequence

import pytest
import tomli_w

from strmsync.models import RemoteItem


class FakeLister:
    """In-memory remote tree: returns the configured paths under ``root``."""

    def __init__(self, paths: Sequence[str] = (), error: Exception | None = None) -> None:
        self.paths = list(paths)
        self.error = error
        self.calls: list[tuple[str, list[str]]] = []

    def list_recursive(self, root: str, extensions: Sequence[str]) -> list[RemoteItem]:
        self.calls.append((root, list(extensions)))
        if self.error is not None:
            raise self.error
        return [RemoteItem(path=p) for p in self.paths]


class FakeResolver:
    """Resolves paths to fake URLs, optionally failing for some of them."""

    def __init__(self, fail_on: Sequence[str] = (), delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls: list[str] = []
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def resolve(self, path: str) -> str:
        with self._lock:
            self.calls.append(path)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if path in self.fail_on:
                raise RuntimeError("resolver unavailable")
            return "http://cdn.example" + path
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    """A target root path that does not exist yet."""
    return tmp_path / "strm"


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict[str, Any]:
    """Return a minimal valid config dict with one mapping."""
    return {
        "data_dir": str(tmp_path / "data"),
        "alist": {"url": "http://alist.local:5244", "token": "alist-test-token"},
        "mappings": [
            {
                "name": "movies",
                "source": "/movies",
                "target": str(tmp_path / "strm" / "movies"),
                "extensions": ["mp4", "mkv"],
            },
        ],
    }


@pytest.fixture
def sample_config_file(
    tmp_path: Path, sample_config_dict: dict[str, Any]
) -> Path:
    """Write a sample config TOML file and return its path."""
    config_path = tmp_path / "config.toml"
    config_path.write_bytes(tomli_w.dumps(sample_config_dict).encode())
    return config_path
