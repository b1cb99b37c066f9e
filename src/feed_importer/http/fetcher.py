"""Feed downloader with retries, a hard deadline, and completeness checks."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol

import httpx

from feed_importer.importing.errors import (
    EmptyFeedError,
    FetchTimeoutError,
    NetworkFailureError,
    NonSuccessStatusError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = "feed-importer/1.0"


class FeedFetcher(Protocol):
    """Downloads the raw body of a feed."""

    def fetch(self, url: str) -> bytes:
        """Return the complete body or raise a fatal import error."""
        raise NotImplementedError


class HttpFeedFetcher:
    """httpx client wrapper that enforces a deadline on the whole download."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if transport is None:
            transport = httpx.HTTPTransport(retries=max_retries)
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            headers={"User-Agent": user_agent, "Accept": "text/csv, */*"},
            transport=transport,
            follow_redirects=True,
        )

    def fetch(self, url: str) -> bytes:
        # httpx timeouts are per network operation; the deadline covers the whole download.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feed-fetch")
        future = executor.submit(self._download, url)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            logger.warning("Timeout fetching %s after %.1fs", url, self.timeout_seconds)
            raise FetchTimeoutError(
                message=f"Timed out fetching feed after {self.timeout_seconds:g}s",
                url=url,
            ) from exc
        finally:
            executor.shutdown(wait=False)

    def _download(self, url: str) -> bytes:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchTimeoutError(message=f"Timed out fetching feed: {exc}", url=url) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            raise NetworkFailureError(message=f"Network failure: {exc}", url=url) from exc

        if not response.is_success:
            raise NonSuccessStatusError(
                message=f"Feed returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        body = response.content
        _check_complete(response, body, url)
        if not body.strip():
            raise EmptyFeedError(message="Feed body is empty", url=url)
        logger.debug("Fetched %d bytes from %s", len(body), url)
        return body

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFeedFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _check_complete(response: httpx.Response, body: bytes, url: str) -> None:
    """Reject bodies shorter than the advertised Content-Length."""

    if response.headers.get("content-encoding"):
        return
    declared = response.headers.get("content-length")
    if declared is None:
        return
    try:
        expected = int(declared)
    except ValueError:
        return
    if len(body) < expected:
        raise NetworkFailureError(
            message=f"Truncated feed body: got {len(body)} of {expected} bytes",
            url=url,
        )
