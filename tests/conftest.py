from __future__ import annotations

import os
import shutil
import tempfile
import threading
from typing import Dict, List, Union

import pytest

from arsd.services.config import Settings
from arsd.services.errors import FetchError


class FakeFetcher:
    """Serves canned list bodies; records every URL requested."""

    def __init__(self, bodies: Dict[str, Union[bytes, Exception]] | None = None) -> None:
        self.bodies: Dict[str, Union[bytes, Exception]] = dict(bodies or {})
        self.calls: List[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        body = self.bodies.get(url)
        if body is None:
            raise FetchError(f"no such list: {url}")
        if isinstance(body, Exception):
            raise body
        return body


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # AF_UNIX paths are limited to ~100 bytes; keep the socket out of tmp_path.
    sock_dir = tempfile.mkdtemp(prefix="ars-")
    yield Settings(config_dir=str(tmp_path / "cfg"), socket_path=os.path.join(sock_dir, "s"))
    shutil.rmtree(sock_dir, ignore_errors=True)


def write_registry(settings: Settings, lines: List[str]) -> None:
    os.makedirs(settings.config_dir, exist_ok=True)
    with open(settings.urls_file, "w", encoding="utf-8") as f:
        f.write("".join(ln + "\n" for ln in lines))


def read_registry(settings: Settings) -> List[str]:
    with open(settings.urls_file, "r", encoding="utf-8") as f:
        return f.read().splitlines()


def write_custom(settings: Settings, text: str) -> None:
    os.makedirs(settings.lists_dir, exist_ok=True)
    with open(settings.custom_filters_file, "w", encoding="utf-8") as f:
        f.write(text)


class StallingFetcher(FakeFetcher):
    """FakeFetcher whose downloads of ``stall_url`` block until released."""

    def __init__(self, bodies: Dict[str, Union[bytes, Exception]], stall_url: str) -> None:
        super().__init__(bodies)
        self.stall_url = stall_url
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch(self, url: str) -> bytes:
        if url == self.stall_url and not self.release.is_set():
            self.entered.set()
            self.release.wait(timeout=30)
        return super().fetch(url)
