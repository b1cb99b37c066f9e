from __future__ import annotations

import threading

import httpx
import allure
import pytest

from feed_importer.http.fetcher import HttpFeedFetcher
from feed_importer.importing.errors import (
    EmptyFeedError,
    FetchTimeoutError,
    NetworkFailureError,
    NonSuccessStatusError,
)

pytestmark = [
    allure.epic("Feed Import"),
    allure.feature("Feed Download"),
]

FEED_URL = "https://shop.example/feed.csv"


def _fetcher(handler, *, timeout_seconds: float = 5.0) -> HttpFeedFetcher:
    return HttpFeedFetcher(
        timeout_seconds=timeout_seconds,
        transport=httpx.MockTransport(handler),
    )


def test_fetch_returns_body_and_sends_user_agent() -> None:
    seen_headers: list[httpx.Headers] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_headers.append(request.headers)
        return httpx.Response(200, content=b"url,title,price\nhttp://a,A,1\n")

    with _fetcher(handler) as fetcher:
        body = fetcher.fetch(FEED_URL)

    assert body.startswith(b"url,title,price")
    assert seen_headers[0]["user-agent"] == "feed-importer/1.0"


def test_non_success_status_is_fatal() -> None:
    with _fetcher(lambda _: httpx.Response(503, content=b"busy")) as fetcher:
        with pytest.raises(NonSuccessStatusError) as exc_info:
            fetcher.fetch(FEED_URL)

    assert exc_info.value.status_code == 503
    assert exc_info.value.url == FEED_URL
    assert str(exc_info.value) == "Feed returned HTTP 503"


@pytest.mark.parametrize("content", [b"", b"  \n\t "])
def test_empty_body_is_fatal(content: bytes) -> None:
    with _fetcher(lambda _: httpx.Response(200, content=content)) as fetcher:
        with pytest.raises(EmptyFeedError):
            fetcher.fetch(FEED_URL)


def test_transport_error_is_network_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _fetcher(handler) as fetcher:
        with pytest.raises(NetworkFailureError, match="connection refused"):
            fetcher.fetch(FEED_URL)


def test_body_shorter_than_content_length_is_network_failure() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"Content-Length": "1000"},
            content=b"url,title,price\nhttp://a,A,1\n",
        )

    with _fetcher(handler) as fetcher:
        with pytest.raises(NetworkFailureError, match="Truncated"):
            fetcher.fetch(FEED_URL)


def test_slow_download_hits_hard_deadline() -> None:
    release = threading.Event()

    def handler(_: httpx.Request) -> httpx.Response:
        release.wait(timeout=5)
        return httpx.Response(200, content=b"url,title,price\n")

    fetcher = _fetcher(handler, timeout_seconds=0.2)
    try:
        with pytest.raises(FetchTimeoutError) as exc_info:
            fetcher.fetch(FEED_URL)
    finally:
        release.set()
        fetcher.close()

    assert exc_info.value.code == "timeout"
    assert exc_info.value.url == FEED_URL
