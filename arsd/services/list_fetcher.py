from __future__ import annotations

import http.client
import logging
import urllib.request
from typing import Optional
from urllib.parse import urlparse

from arsd.services.config import DEFAULT_MAX_DOWNLOAD_BYTES
from arsd.services.errors import FetchError


logger = logging.getLogger(__name__)

USER_AGENT = "arsd/filter-lists"


class ListFetcher:
    """Downloads raw filter-list bytes.

    timeout=None blocks until the server answers or the connection drops.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        max_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = int(max_bytes) if int(max_bytes) > 0 else DEFAULT_MAX_DOWNLOAD_BYTES

    def fetch(self, url: str) -> bytes:
        u = urlparse(url or "")
        if u.scheme not in ("http", "https"):
            raise FetchError(f"Only http/https URLs are supported: {url!r}")

        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        chunks = []
        total = 0
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                cl = resp.headers.get("Content-Length")
                if cl is not None and cl.strip().isdigit() and int(cl) > self.max_bytes:
                    raise FetchError(f"Download too large (Content-Length={cl}): {url}")
                while True:
                    chunk = resp.read(256 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise FetchError(f"Download exceeded limit ({self.max_bytes} bytes): {url}")
                    chunks.append(chunk)
        except FetchError:
            raise
        except (OSError, ValueError, http.client.HTTPException) as e:
            # URLError and HTTPError are OSError subclasses.
            raise FetchError(f"Failed to fetch {url}: {e}") from e

        logger.info("Fetched %s (%d bytes)", url, total)
        return b"".join(chunks)
