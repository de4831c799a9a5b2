from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from arsd.services.errors import StartupFatalError


DEFAULT_SOCKET_PATH = "/tmp/ars"
DEFAULT_MAX_DOWNLOAD_BYTES = 64 * 1024 * 1024

CUSTOM_FILTERS_NAME = "custom"


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


@dataclass(frozen=True)
class Settings:
    config_dir: str
    socket_path: str = DEFAULT_SOCKET_PATH
    fetch_timeout: Optional[float] = None
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES
    log_level: str = "INFO"
    status_bind: str = ""

    @property
    def urls_file(self) -> str:
        return os.path.join(self.config_dir, "urls")

    @property
    def lists_dir(self) -> str:
        return os.path.join(self.config_dir, "lists")

    @property
    def engine_file(self) -> str:
        return os.path.join(self.config_dir, "engine")

    @property
    def custom_filters_file(self) -> str:
        return os.path.join(self.lists_dir, CUSTOM_FILTERS_NAME)

    def status_address(self) -> Optional[Tuple[str, int]]:
        """Parse ARS_STATUS_BIND ("host:port" or ":port"). None when disabled."""
        raw = (self.status_bind or "").strip()
        if not raw:
            return None
        host, sep, port = raw.rpartition(":")
        if not sep:
            host, port = "", raw
        try:
            port_i = int(port)
        except ValueError:
            raise StartupFatalError(f"Invalid ARS_STATUS_BIND value: {raw!r}")
        if not (0 < port_i < 65536):
            raise StartupFatalError(f"Invalid ARS_STATUS_BIND port: {port_i}")
        return (host or "127.0.0.1"), port_i


def get_settings() -> Settings:
    """Build settings from the environment.

    Raises StartupFatalError when neither ARS_CONFIG_DIR nor HOME is set.
    """
    config_dir = (os.environ.get("ARS_CONFIG_DIR") or "").strip()
    if not config_dir:
        home = os.environ.get("HOME")
        if not home:
            raise StartupFatalError("Can't find environment variable $HOME")
        config_dir = os.path.join(home, ".config", "ars")

    timeout = _env_int("ARS_FETCH_TIMEOUT", 0)
    max_bytes = _env_int("ARS_MAX_DOWNLOAD_BYTES", DEFAULT_MAX_DOWNLOAD_BYTES)
    if max_bytes <= 0:
        max_bytes = DEFAULT_MAX_DOWNLOAD_BYTES

    return Settings(
        config_dir=config_dir,
        socket_path=(os.environ.get("ARS_SOCKET_PATH") or "").strip() or DEFAULT_SOCKET_PATH,
        fetch_timeout=float(timeout) if timeout > 0 else None,
        max_download_bytes=max_bytes,
        log_level=(os.environ.get("ARS_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        status_bind=(os.environ.get("ARS_STATUS_BIND") or "").strip(),
    )
