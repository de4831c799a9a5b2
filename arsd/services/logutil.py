from __future__ import annotations

import threading
import time
from typing import Dict


_lock = threading.Lock()
_last_log: Dict[str, float] = {}


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def log_exception_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """Log the active exception at most once per interval per key.

    Used on paths that can fail repeatedly without being fatal (cache writes,
    unhandled errors in session threads) so a broken disk or a misbehaving
    client does not flood stderr.
    """
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.exception(message, *args)
    except Exception:
        # Never let logging break the caller.
        pass


def reset_throttle() -> None:
    with _lock:
        _last_log.clear()
