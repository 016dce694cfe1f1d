from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol, Sequence
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("pecsboard.blobstore")


class BlobStore(Protocol):
    def delete(self, urls: Sequence[str]) -> None:
        ...


class HttpBlobStore:
    """Client for the hosted blob store's delete API."""

    def __init__(self, api_url: str, token: str, timeout: float) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def delete(self, urls: Sequence[str]) -> None:
        if not urls:
            return
        response = httpx.post(
            f"{self.api_url}/delete",
            json={"urls": list(urls)},
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
        )
        response.raise_for_status()


class NullBlobStore:
    """Used when no blob store credentials are configured."""

    def delete(self, urls: Sequence[str]) -> None:
        if urls:
            logger.info("blob store not configured, leaving %d media files in place", len(urls))


def owned_media(urls: Iterable[Optional[str]], host_suffix: str) -> List[str]:
    """Keep the URLs that point into our blob store, without duplicates."""
    owned: List[str] = []
    for url in urls:
        if not url:
            continue
        host = urlparse(url).hostname or ""
        if host.endswith(host_suffix) and url not in owned:
            owned.append(url)
    return owned
