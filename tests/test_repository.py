from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from feed_importer.importing.errors import ConflictError, InvalidStateError
from feed_importer.importing.models import (
    ErrorDetail,
    FeedView,
    JobStatus,
    ProductFields,
    UpsertAction,
)
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.storage.common import utc_now

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Catalog Repository"),
]


def test_create_feed_rejects_duplicate_url(repository: CatalogRepository, feed: FeedView) -> None:
    with pytest.raises(ConflictError, match="already exists"):
        repository.create_feed(name="Copy", url=feed.url)


def test_record_feed_import_bumps_stats(repository: CatalogRepository, feed: FeedView) -> None:
    assert feed.last_imported_at is None

    repository.record_feed_import(feed.feed_id)
    repository.record_feed_import(feed.feed_id)

    stored = repository.get_feed(feed.feed_id)
    assert stored is not None
    assert stored.import_count == 2
    assert stored.last_imported_at is not None


def test_upsert_inserts_then_merges_by_url(repository: CatalogRepository, feed: FeedView) -> None:
    first = repository.upsert_product(
        feed_id=feed.feed_id,
        fields=ProductFields(url="http://a", title="A", price=10.0, brand="Acme"),
    )
    second = repository.upsert_product(
        feed_id=feed.feed_id,
        fields=ProductFields(url="http://a", title="A v2", price=12.0),
    )

    assert first.action == UpsertAction.INSERTED
    assert first.previous_price is None
    assert second.action == UpsertAction.UPDATED
    assert second.product_id == first.product_id
    assert second.previous_price == 10.0
    assert second.price_changed

    product = repository.get_product(first.product_id)
    assert product is not None
    assert product.title == "A v2"
    assert product.brand == "Acme"
    assert product.active is True


def test_unchanged_price_is_not_a_price_change(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    fields = ProductFields(url="http://a", title="A", price=10.0)
    repository.upsert_product(feed_id=feed.feed_id, fields=fields)

    result = repository.upsert_product(feed_id=feed.feed_id, fields=fields)

    assert result.action == UpsertAction.UPDATED
    assert not result.price_changed


def test_deactivate_counts_only_still_active_rows(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    for url in ("http://a", "http://b", "http://c"):
        repository.upsert_product(
            feed_id=feed.feed_id,
            fields=ProductFields(url=url, title=url, price=1.0),
        )

    assert repository.deactivate_products(feed_id=feed.feed_id, urls=["http://a", "http://b"]) == 2
    assert repository.deactivate_products(feed_id=feed.feed_id, urls=["http://a"]) == 0
    assert repository.snapshot_active_product_urls(feed.feed_id).keys() == {"http://c"}

    total, inactive = repository.list_products(feed_id=feed.feed_id, active=False)
    assert total == 2
    assert {product.url for product in inactive} == {"http://a", "http://b"}


def test_price_history_is_listed_chronologically(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    result = repository.upsert_product(
        feed_id=feed.feed_id,
        fields=ProductFields(url="http://a", title="A", price=10.0),
    )
    repository.add_price_history(
        product_id=result.product_id,
        price=10.0,
        previous_price=None,
        feed_id=feed.feed_id,
        job_id="job-1",
    )
    repository.add_price_history(
        product_id=result.product_id,
        price=15.0,
        previous_price=10.0,
        feed_id=feed.feed_id,
        job_id="job-2",
    )

    entries = repository.list_price_history(result.product_id)
    assert [(entry.price, entry.previous_price) for entry in entries] == [
        (10.0, None),
        (15.0, 10.0),
    ]
    assert repository.list_price_history(
        result.product_id,
        since=utc_now() + timedelta(days=1),
    ) == []


def test_job_error_details_round_trip(repository: CatalogRepository, feed: FeedView) -> None:
    job = repository.create_job(feed_id=feed.feed_id, feed_name=feed.name, owner_id=feed.owner_id)
    assert job.status == JobStatus.PENDING
    assert job.error_details == []

    updated = repository.update_job(
        job.job_id,
        {
            "error_count": 1,
            "error_details": [ErrorDetail(index=3, error="Invalid price", url="u", title="t")],
        },
    )

    assert updated.error_count == 1
    assert updated.error_details == [
        ErrorDetail(index=3, error="Invalid price", url="u", title="t"),
    ]


def test_only_one_job_may_be_processing(repository: CatalogRepository, feed: FeedView) -> None:
    other = repository.create_feed(name="Other", url="https://other.example/feed.csv")
    first = repository.create_job(feed_id=feed.feed_id, feed_name=feed.name, owner_id="u")
    second = repository.create_job(feed_id=other.feed_id, feed_name=other.name, owner_id="u")

    repository.update_job(first.job_id, {"status": JobStatus.PROCESSING})

    with pytest.raises(InvalidStateError, match="already processing"):
        repository.update_job(second.job_id, {"status": JobStatus.PROCESSING})


def test_update_job_rejects_unknown_fields(repository: CatalogRepository, feed: FeedView) -> None:
    job = repository.create_job(feed_id=feed.feed_id, feed_name=feed.name, owner_id="u")

    with pytest.raises(ValueError, match="Unknown import job fields"):
        repository.update_job(job.job_id, {"feed_id": "other"})
