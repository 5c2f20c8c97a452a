"""Edge cache purging for deleted or replaced image objects."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable

import httpx

from ..config import get_settings
from ..errors import DependencyError
from ..security.secrets import optional_secret

logger = logging.getLogger(__name__)


class CdnPurgeError(DependencyError):
    """Raised when the CDN purge endpoint rejects or fails a request."""


class CdnPurger:
    def __init__(
        self,
        *,
        public_base_url: str | None = None,
        purge_url: str | None = None,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._public_base_url = (public_base_url or "").rstrip("/")
        self._purge_url = purge_url
        self._token = token
        self._timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._purge_url)

    def public_urls(self, storage_keys: Iterable[str]) -> list[str]:
        if not self._public_base_url:
            return []
        return [f"{self._public_base_url}/{key.lstrip('/')}" for key in storage_keys if key]

    async def purge(self, storage_keys: Iterable[str]) -> list[str]:
        """Ask the edge to drop the public URLs of ``storage_keys``; returns the URLs sent."""

        urls = self.public_urls(storage_keys)
        if not urls:
            return []
        if not self.enabled:
            logger.info("CDN purge endpoint not configured; %d URLs left to expire: %s", len(urls), urls)
            return []

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._purge_url, json={"files": urls}, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("CDN purge rejected | status=%s urls=%d", exc.response.status_code, len(urls))
            raise CdnPurgeError(f"CDN purge failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("CDN purge transport error | error=%s", type(exc).__name__)
            raise CdnPurgeError("CDN purge request failed") from exc
        logger.info("Purged %d URLs from the CDN", len(urls))
        return urls


@lru_cache(maxsize=1)
def get_cdn_purger() -> CdnPurger:
    settings = get_settings()
    return CdnPurger(
        public_base_url=settings.cdn_public_base_url,
        purge_url=settings.cdn_purge_url,
        token=optional_secret(settings.cdn_purge_token),
        timeout=settings.cdn_purge_timeout,
    )


__all__ = ["CdnPurger", "CdnPurgeError", "get_cdn_purger"]
