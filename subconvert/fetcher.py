"""Download remote resources into the local cache directory."""

from __future__ import annotations

import logging
import os
import time

import requests

from .errors import CacheIOError, FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "Subscribe-Convert/1.0"
NO_CACHE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def add_cache_buster(url: str) -> str:
    """Append a single-use _t=<ns timestamp> parameter so CDNs cannot serve a stale copy."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}_t={time.time_ns()}"


def write_atomic(path: str, data: bytes) -> None:
    """Write data to path via a temp file + rename so readers never see a partial file."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    except OSError as e:
        raise CacheIOError(f"create cache dir error: {e}") from e
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            pass
        raise CacheIOError(f"write cache file error: {e}") from e


class Fetcher:
    """HTTP GET into a cache file. No retries; the caller decides when to try again."""

    def __init__(self, timeout: float, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url: str, dest_path: str) -> int:
        """Download url to dest_path and return the number of bytes written."""
        target = add_cache_buster(url)
        logger.info("fetching %s", target)
        try:
            resp = self.session.get(target, headers=NO_CACHE_HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"fetch error: {e}") from e
        try:
            if resp.status_code != 200:
                raise FetchError(f"fetch failed with status: {resp.status_code}")
            data = resp.content
        except requests.RequestException as e:
            raise FetchError(f"read response error: {e}") from e
        finally:
            resp.close()
        if not data:
            raise FetchError("received empty file")
        write_atomic(dest_path, data)
        logger.info("cached %s (%d bytes)", dest_path, len(data))
        return len(data)

    def close(self) -> None:
        self.session.close()
