"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from feed_importer.config import ImportSettings, Settings
from feed_importer.importing.cache import ReadCache
from feed_importer.importing.errors import FatalImportError
from feed_importer.importing.models import FeedView
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.service import ImportService
from feed_importer.importing.storage.sqlmodel_models import DEFAULT_USER_ID


class StaticFetcher:
    """Serves canned bodies (or raises canned errors) per feed url."""

    def __init__(self, bodies: dict[str, bytes | FatalImportError] | None = None) -> None:
        self.bodies: dict[str, bytes | FatalImportError] = dict(bodies or {})
        self.calls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        body = self.bodies[url]
        if isinstance(body, FatalImportError):
            raise body
        return body


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[CatalogRepository]:
    repo = CatalogRepository(tmp_path / "catalog.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def feed(repository: CatalogRepository) -> FeedView:
    return repository.create_feed(name="Shop", url="https://shop.example/feed.csv")


@pytest.fixture()
def fetcher() -> StaticFetcher:
    return StaticFetcher()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "catalog.db",
        imports=ImportSettings(batch_size=2, row_workers=2),
    )


@pytest.fixture()
def service(
    settings: Settings,
    repository: CatalogRepository,
    fetcher: StaticFetcher,
) -> Iterator[ImportService]:
    svc = ImportService(
        settings=settings,
        repository=repository,
        fetcher=fetcher,
        cache=ReadCache(ttl_seconds=60),
    )
    try:
        yield svc
    finally:
        svc.queue.shutdown(drain=False, timeout=5)


@pytest.fixture()
def user_id() -> str:
    return DEFAULT_USER_ID
