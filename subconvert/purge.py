"""Cloudflare cache purge, run after a manual refresh when enabled."""

from __future__ import annotations

import logging

import requests

from .config import CloudflareConfig
from .errors import FetchError

logger = logging.getLogger(__name__)


class CachePurger:
    def __init__(self, cfg: CloudflareConfig, timeout: float, session: requests.Session | None = None):
        self.cfg = cfg
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return self.cfg.enabled

    def _auth_headers(self) -> dict[str, str]:
        if self.cfg.api_token:
            return {"Authorization": f"Bearer {self.cfg.api_token}"}
        if self.cfg.api_key and self.cfg.api_email:
            return {"X-Auth-Key": self.cfg.api_key, "X-Auth-Email": self.cfg.api_email}
        raise FetchError("cloudflare authentication not configured: api_token or api_key + api_email is required")

    def purge(self) -> None:
        if not self.cfg.enabled:
            logger.debug("cloudflare cache purge disabled")
            return
        if not self.cfg.purge_url:
            raise FetchError("cloudflare purge_url is not configured")
        headers = {"Content-Type": "application/json"}
        headers.update(self._auth_headers())
        logger.info("purging cloudflare cache via %s", self.cfg.purge_url)
        try:
            resp = self.session.post(
                self.cfg.purge_url,
                json={"purge_everything": True},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FetchError(f"failed to send request: {e}") from e
        if resp.status_code < 200 or resp.status_code >= 300:
            raise FetchError(f"cloudflare API returned status {resp.status_code}: {resp.text}")
        logger.info("cloudflare cache purged (status=%s)", resp.status_code)

    def close(self) -> None:
        self.session.close()
