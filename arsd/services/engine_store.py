from __future__ import annotations

import logging
import os
import tempfile
import threading
from typing import Optional

from arsd.services import registry_store
from arsd.services.config import Settings
from arsd.services.engine import EngineSnapshot
from arsd.services.errors import (
    DeserializationError,
    FetchError,
    SerializationError,
    StartupFatalError,
)
from arsd.services.list_fetcher import ListFetcher
from arsd.services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


CUSTOM_FILTERS_HEADER = (
    "# Add your custom network and cosmetic filters here, "
    "lines starting with # will be ignored"
)

MODE_DEFAULT = "default"
MODE_RELOAD = "reload"
MODE_UPDATE = "update"


def read_corpus(lists_dir: str) -> str:
    """Concatenate every regular file in lists_dir, in name order."""
    try:
        names = sorted(os.listdir(lists_dir))
    except OSError as e:
        raise StartupFatalError(f"Lists directory doesn't exist or is unreadable: {lists_dir}") from e

    parts = []
    for name in names:
        path = os.path.join(lists_dir, name)
        if not os.path.isfile(path) or name.startswith(".tmp-"):
            continue
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
        if text and not text.endswith("\n"):
            text += "\n"
        parts.append(text)
    return "".join(parts)


def write_cache(cache_file: str, snapshot: EngineSnapshot) -> None:
    directory = os.path.dirname(cache_file) or "."
    try:
        data = snapshot.serialize()
        fd, tmp = tempfile.mkstemp(prefix=".engine-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, cache_file)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
    except (OSError, ValueError) as e:
        raise SerializationError(f"Can't write engine cache {cache_file}: {e}") from e


def obtain_snapshot(cache_file: str, lists_dir: str, registry_changed: bool) -> EngineSnapshot:
    """Reuse the cached engine when the registry is unchanged, else rebuild.

    A bad cache file costs one rebuild; the cache is never retried twice.
    """
    changed = registry_changed
    for _attempt in range(2):
        if not changed and os.path.exists(cache_file):
            try:
                with open(cache_file, "rb") as f:
                    data = f.read()
                snap = EngineSnapshot.deserialize(data)
                logger.info("Loaded engine from cache %s", cache_file)
                return snap
            except (OSError, DeserializationError) as e:
                logger.warning("Ignoring engine cache %s: %s", cache_file, e)
                changed = True
                continue
        break

    snap = EngineSnapshot.build(read_corpus(lists_dir))
    try:
        write_cache(cache_file, snap)
    except SerializationError:
        log_exception_throttled(
            logger,
            "engine_store.write_cache",
            interval_seconds=300.0,
            message="Engine cache write failed; continuing with in-memory engine",
        )
    return snap


class SharedEngineHandle:
    """Swappable reference to the active snapshot, shared by every session.

    Readers take ``current`` without locking. Snapshots are immutable, and
    replacing the attribute is a single reference store.
    """

    def __init__(self, snapshot: Optional[EngineSnapshot] = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = snapshot
        self._generation = 1 if snapshot is not None else 0

    @property
    def current(self) -> EngineSnapshot:
        snap = self._snapshot
        if snap is None:
            raise RuntimeError("No engine published yet")
        return snap

    @property
    def generation(self) -> int:
        return self._generation

    def publish(self, snapshot: EngineSnapshot) -> int:
        with self._lock:
            self._snapshot = snapshot
            self._generation += 1
            gen = self._generation
        logger.info(
            "Published engine generation %d (%d network, %d cosmetic rules)",
            gen,
            snapshot.network_rule_count,
            snapshot.cosmetic_rule_count,
        )
        return gen


class EngineController:
    def __init__(
        self,
        settings: Settings,
        *,
        fetcher=None,
        handle: Optional[SharedEngineHandle] = None,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher or ListFetcher(
            timeout=settings.fetch_timeout,
            max_bytes=settings.max_download_bytes,
        )
        self.handle = handle or SharedEngineHandle()

    def _ensure_custom_filters(self) -> None:
        path = self.settings.custom_filters_file
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(CUSTOM_FILTERS_HEADER + "\n")
            logger.info("Created custom filters file %s", path)
        except FileExistsError:
            pass
        except OSError:
            logger.exception("Can't create custom filters file %s", path)

    def _registry_pass(self, force: bool) -> bool:
        s = self.settings
        return registry_store.load_or_create(s.urls_file, s.lists_dir, force, self.fetcher)

    def setup(self, mode: str = MODE_DEFAULT) -> EngineSnapshot:
        """Refresh lists per ``mode`` and return a snapshot (not yet published)."""
        if mode == MODE_DEFAULT:
            changed = self._registry_pass(False)
        elif mode == MODE_RELOAD:
            self._registry_pass(False)
            changed = True
        elif mode == MODE_UPDATE:
            changed = self._registry_pass(True)
        else:
            raise ValueError(f"Unknown setup mode: {mode!r}")

        self._ensure_custom_filters()
        return obtain_snapshot(self.settings.engine_file, self.settings.lists_dir, changed)

    def start(self) -> EngineSnapshot:
        """Initial build. Fetch failures fall back to the lists already on disk."""
        os.makedirs(self.settings.config_dir, exist_ok=True)
        try:
            snap = self.setup(MODE_DEFAULT)
        except FetchError as e:
            logger.error("Filter list refresh failed at startup, using lists on disk: %s", e)
            self._ensure_custom_filters()
            snap = obtain_snapshot(self.settings.engine_file, self.settings.lists_dir, True)
        self.handle.publish(snap)
        return snap

    def reload(self) -> int:
        return self.handle.publish(self.setup(MODE_RELOAD))

    def update(self) -> int:
        return self.handle.publish(self.setup(MODE_UPDATE))
