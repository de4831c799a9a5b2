from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol
from urllib.parse import urlsplit

from arsd.services.config import CUSTOM_FILTERS_NAME
from arsd.services.errors import FetchError


logger = logging.getLogger(__name__)


REGISTRY_HEADER = (
    "# Add your filter list urls here; lines starting with # will be ignored; "
    "timestamps right after urls determine the expiration time"
)

EXPIRES_MARKER = "! Expires: "

# Guards reading and rewriting the urls file; downloads happen outside it.
_registry_lock = threading.Lock()


class Fetcher(Protocol):
    def fetch(self, url: str) -> bytes: ...


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class SubscriptionEntry:
    url: str
    expires_at: Optional[int] = None

    def render(self) -> str:
        if self.expires_at is None:
            return self.url
        return f"{self.url} {self.expires_at}"

    def needs_refresh(self, now_ts: int, force: bool = False) -> bool:
        if force or self.expires_at is None:
            return True
        return self.expires_at < now_ts


def is_comment(line: str) -> bool:
    return line.startswith("#") or not line.strip()


def parse_entry(line: str) -> SubscriptionEntry:
    """Parse a non-comment registry line ("<url>" or "<url> <expires>").

    An expiry token that is not an integer is treated as absent so the entry
    is refreshed and rewritten with a valid one.
    """
    parts = line.strip().split(" ")
    url = parts[0]
    expires_at: Optional[int] = None
    if len(parts) > 1 and parts[1]:
        try:
            expires_at = int(parts[1])
        except ValueError:
            logger.warning("Ignoring invalid expiry %r for %s", parts[1], url)
    return SubscriptionEntry(url=url, expires_at=expires_at)


def read_entries(urls_file: str) -> List[SubscriptionEntry]:
    if not os.path.exists(urls_file):
        return []
    with open(urls_file, "r", encoding="utf-8", errors="replace") as f:
        return [parse_entry(ln.rstrip("\r\n")) for ln in f if not is_comment(ln.rstrip("\r\n"))]


def list_filename(url: str) -> str:
    """File name a subscription is stored under: the URL's final path segment."""
    path = urlsplit(url).path
    name = path.split("/")[-1]
    if not name or name in (".", "..") or name == CUSTOM_FILTERS_NAME:
        raise FetchError(f"Can't derive a list file name from {url!r}")
    return name


def _write_atomic(path: str, data: bytes) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def parse_expiry(content: str, now_ts: int) -> Optional[int]:
    for line in content.splitlines():
        idx = line.find(EXPIRES_MARKER)
        if idx < 0:
            continue
        token = line[idx + len(EXPIRES_MARKER):].strip().split(" ")[0]
        try:
            days = int(token)
        except ValueError:
            continue
        return now_ts + days * 24 * 3600
    return None


def refresh_entry(url: str, lists_dir: str, fetcher: Fetcher) -> str:
    """Download one list and return its rewritten registry line.

    The line carries an expiry when the list announces "! Expires: N days";
    without one the entry is only refreshed again on a forced update.
    """
    filename = list_filename(url)
    data = fetcher.fetch(url)
    path = os.path.join(lists_dir, filename)
    try:
        _write_atomic(path, data)
    except OSError as e:
        raise FetchError(f"Can't write {path}: {e}") from e

    expires_at = parse_expiry(data.decode("utf-8", errors="replace"), _now())
    line = SubscriptionEntry(url=url, expires_at=expires_at).render()
    logger.info("Refreshed %s -> %s", url, line)
    return line


def _read_lines(urls_file: str) -> List[str]:
    with open(urls_file, "r", encoding="utf-8", errors="replace") as f:
        return [ln.rstrip("\r\n") for ln in f]


def load_or_create(urls_file: str, lists_dir: str, force_update: bool, fetcher: Fetcher) -> bool:
    """Run one registry pass; returns True if any entry was refreshed.

    Creates the urls file (header only) when absent. Downloads run without
    holding the registry lock; the lock only covers reading the file and
    committing the refreshed lines. Nothing is written back unless every
    refresh succeeded.
    """
    os.makedirs(lists_dir, exist_ok=True)

    with _registry_lock:
        if not os.path.exists(urls_file):
            os.makedirs(os.path.dirname(urls_file) or ".", exist_ok=True)
            with open(urls_file, "w", encoding="utf-8") as f:
                f.write(REGISTRY_HEADER + "\n")
            logger.info("Created registry %s", urls_file)
            return False
        lines = _read_lines(urls_file)

    now_ts = _now()
    refreshed: Dict[str, str] = {}
    for line in lines:
        if is_comment(line):
            continue
        entry = parse_entry(line)
        if entry.url in refreshed or not entry.needs_refresh(now_ts, force_update):
            continue
        refreshed[entry.url] = refresh_entry(entry.url, lists_dir, fetcher)

    if not refreshed:
        return False

    with _registry_lock:
        # Another pass may have committed while we were downloading.
        out: List[str] = []
        for line in _read_lines(urls_file):
            if not is_comment(line):
                line = refreshed.get(parse_entry(line).url, line)
            out.append(line)
        _write_atomic(urls_file, "".join(ln + "\n" for ln in out).encode("utf-8"))
    return True
