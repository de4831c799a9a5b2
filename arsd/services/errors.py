from __future__ import annotations

import os
import re


class ArsError(Exception):
    """Base class for daemon errors."""


class StartupFatalError(ArsError):
    """The daemon cannot start (environment, lists directory, socket bind)."""


class ProtocolError(ArsError):
    """A request line could not be understood. Scoped to one session."""


class FetchError(ArsError):
    """A filter list could not be downloaded or written to disk."""


class BuildError(ArsError):
    """An engine snapshot could not be built from the filter corpus."""


class DeserializationError(ArsError):
    """The cached engine file is missing, truncated or in another format."""


class SerializationError(ArsError):
    """The engine could not be written to the cache file."""


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check daemon logs for details.",
    max_len: int = 200,
) -> str:
    """Return a user-safe error message.

    - By default, avoids leaking internal exception details.
    - ArsError and ValueError messages are ours, so they are returned as-is.
    - If EXPOSE_INTERNAL_ERRORS is set, returns the exception type + message.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (ArsError, ValueError)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default
