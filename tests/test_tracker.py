from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from feed_importer.importing.cache import ReadCache
from feed_importer.importing.errors import InvalidStateError, NotFoundError
from feed_importer.importing.models import (
    ErrorDetail,
    FeedView,
    ImportCounters,
    JobStatus,
)
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.tracker import INTERRUPTED, ImportJobTracker

pytestmark = [
    allure.epic("Feed Import"),
    allure.feature("Import Job Tracking"),
]


def _tracker(repository: CatalogRepository, cache: ReadCache | None = None) -> ImportJobTracker:
    return ImportJobTracker(repository=repository, cache=cache or ReadCache(), error_details_cap=3)


def test_create_snapshots_feed_name(repository: CatalogRepository, feed: FeedView) -> None:
    job = _tracker(repository).create(feed.feed_id, "default_user")

    assert job.status == JobStatus.PENDING
    assert job.feed_name == "Shop"
    assert job.owner_id == "default_user"


def test_create_for_unknown_feed_is_not_found(repository: CatalogRepository) -> None:
    with pytest.raises(NotFoundError):
        _tracker(repository).create("missing", "default_user")


def test_update_invalidates_job_history_cache(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    cache = ReadCache()
    tracker = _tracker(repository, cache)
    job = tracker.create(feed.feed_id, "default_user")
    cache.set("import-history:default_user:page1", "stale")
    cache.set("products:keep", "fresh")

    tracker.start(job.job_id)

    assert cache.get("import-history:default_user:page1") is None
    assert cache.get("products:keep") == "fresh"


def test_complete_stores_counters_and_duration(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    tracker = _tracker(repository)
    job = tracker.create(feed.feed_id, "default_user")
    tracker.start(job.job_id)

    done = tracker.complete(
        job.job_id,
        ImportCounters(total_processed=3, inserted=2, updated=1),
    )

    assert done.status == JobStatus.COMPLETED
    assert (done.total_processed, done.inserted, done.updated) == (3, 2, 1)
    assert done.ended_at is not None
    assert done.duration_seconds >= 0


def test_terminal_jobs_reject_updates(repository: CatalogRepository, feed: FeedView) -> None:
    tracker = _tracker(repository)
    job = tracker.create(feed.feed_id, "default_user")
    tracker.fail(job.job_id, "stopped by user")

    with pytest.raises(InvalidStateError, match="already failed"):
        tracker.update(job.job_id, status=JobStatus.PROCESSING)


def test_fail_appends_system_entry_within_cap(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    tracker = _tracker(repository)
    job = tracker.create(feed.feed_id, "default_user")
    tracker.start(job.job_id)
    counters = ImportCounters()
    for index in range(5):
        counters.add_error(
            ErrorDetail(index=index, error="Invalid price", url=f"http://{index}", title="x"),
            cap=3,
        )

    failed = tracker.fail(job.job_id, "Feed returned HTTP 500", counters)

    assert failed.status == JobStatus.FAILED
    assert failed.error_summary == "Feed returned HTTP 500"
    assert failed.error_count == 5
    assert len(failed.error_details) == 3
    assert [detail.index for detail in failed.error_details[:2]] == [0, 1]
    assert failed.error_details[-1] == ErrorDetail(
        index=0,
        error="Feed returned HTTP 500",
        url="system",
        title="System Error",
    )


def test_recover_stale_fails_abandoned_jobs(
    repository: CatalogRepository,
    feed: FeedView,
) -> None:
    tracker = _tracker(repository)
    job = tracker.create(feed.feed_id, "default_user")
    tracker.start(job.job_id)

    assert tracker.recover_stale(stale_after=timedelta(hours=1)) == []

    repository._connection.execute(
        "UPDATE import_jobs SET heartbeat_at = '2000-01-01 00:00:00.000000' WHERE job_id = ?",
        (job.job_id,),
    )
    repository._connection.commit()

    assert tracker.recover_stale(stale_after=timedelta(hours=1)) == [job.job_id]
    recovered = tracker.get(job.job_id)
    assert recovered.status == JobStatus.FAILED
    assert recovered.error_summary == INTERRUPTED
