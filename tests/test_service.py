from __future__ import annotations

import allure
import pytest

from feed_importer.importing.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from feed_importer.importing.models import (
    FeedRegistration,
    FeedView,
    HistoryTimeframe,
    JobStatus,
)
from feed_importer.importing.service import ImportService

pytestmark = [
    allure.epic("Import Service"),
    allure.feature("Service Facade"),
]


def _csv(*rows: str) -> bytes:
    return "\n".join(["url,title,price", *rows]).encode("utf-8")


def test_enqueue_unknown_feed_is_not_found(service: ImportService, user_id: str) -> None:
    with pytest.raises(NotFoundError):
        service.enqueue_import("missing-feed", user_id)


def test_enqueue_foreign_feed_is_forbidden(service: ImportService) -> None:
    foreign = service.create_feed(
        name="Theirs",
        url="https://theirs.example/feed.csv",
        user_id="bob",
    )

    with pytest.raises(ForbiddenError):
        service.enqueue_import(foreign.feed_id, "alice")


def test_enqueue_inactive_feed_is_invalid_state(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    service.set_feed_active(feed.feed_id, user_id, active=False)

    with pytest.raises(InvalidStateError, match="inactive"):
        service.enqueue_import(feed.feed_id, user_id)


def test_create_feed_validates_input(service: ImportService, user_id: str) -> None:
    with pytest.raises(InvalidStateError, match="http"):
        service.create_feed(name="Bad", url="ftp://files.example/feed.csv", user_id=user_id)

    service.create_feed(name="Good", url="https://good.example/feed.csv", user_id=user_id)
    with pytest.raises(ConflictError):
        service.create_feed(name="Again", url="https://good.example/feed.csv", user_id=user_id)


def test_enqueue_all_skips_inactive_feeds(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    paused = service.create_feed(name="Paused", url="https://paused.example/f.csv", user_id=user_id)
    service.set_feed_active(paused.feed_id, user_id, active=False)

    result = service.enqueue_all_active_imports(user_id)

    assert result.queued_count == 1
    assert service.get_job(result.job_ids[0], user_id).feed_id == feed.feed_id


def test_global_status_reports_queue_and_today_totals(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    fetcher = service.fetcher
    fetcher.bodies[feed.url] = _csv("http://a,A,1", "http://b,B,x")  # type: ignore[attr-defined]

    queued = service.enqueue_import(feed.feed_id, user_id)
    status = service.get_global_status(user_id)
    assert status.is_importing is True
    assert status.current_job is None
    assert [job.job_id for job in status.queued_jobs] == [queued.job_id]

    service.queue.drain()
    status = service.get_global_status(user_id)

    assert status.is_importing is False
    assert status.active_feed_count == 1
    assert status.processed_feeds_today == 1
    assert status.today_stats.total_processed == 2
    assert status.today_stats.inserted == 1
    assert status.today_stats.errors == 1


def test_list_jobs_pages_newest_first_and_sees_new_jobs(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    service.fetcher.bodies[feed.url] = _csv("http://a,A,1")  # type: ignore[attr-defined]
    service.enqueue_import(feed.feed_id, user_id)
    service.queue.drain()

    first_page = service.list_jobs(user_id, limit=1)
    assert first_page.total == 1

    latest = service.enqueue_import(feed.feed_id, user_id)
    page = service.list_jobs(user_id, limit=1)

    assert page.total == 2
    assert page.total_pages == 2
    assert page.items[0].job_id == latest.job_id
    pending = service.list_jobs(user_id, status=JobStatus.PENDING)
    assert [job.job_id for job in pending.items] == [latest.job_id]


def test_get_job_of_another_user_is_forbidden(service: ImportService, feed: FeedView) -> None:
    job = service.enqueue_import(feed.feed_id, feed.owner_id)

    with pytest.raises(ForbiddenError):
        service.get_job(job.job_id, "mallory")
    with pytest.raises(NotFoundError):
        service.get_job("missing-job", feed.owner_id)


def test_product_reads_refresh_after_import(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    service.fetcher.bodies[feed.url] = _csv("http://a,A,10")  # type: ignore[attr-defined]
    service.enqueue_import(feed.feed_id, user_id)
    service.queue.drain()
    products = service.list_products(feed.feed_id, user_id)
    product_id = products.items[0].product_id
    assert len(service.get_price_history(product_id, user_id)) == 1

    fetcher = service.fetcher
    fetcher.bodies[feed.url] = _csv("http://a,A,12", "http://b,B,3")  # type: ignore[attr-defined]
    service.enqueue_import(feed.feed_id, user_id)
    service.queue.drain()

    assert service.list_products(feed.feed_id, user_id).total == 2
    history = service.get_price_history(product_id, user_id, timeframe=HistoryTimeframe.WEEK)
    assert [entry.price for entry in history] == [10.0, 12.0]


def test_stop_imports_fails_waiting_jobs(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    queued = service.enqueue_import(feed.feed_id, user_id)

    result = service.stop_imports(user_id)

    assert result.dropped_job_ids == [queued.job_id]
    assert result.current_job_id is None
    assert service.get_job(queued.job_id, user_id).status == JobStatus.FAILED


def test_stop_imports_fails_jobs_persisted_by_another_process(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    running = service.tracker.create(feed.feed_id, user_id)
    service.tracker.start(running.job_id)
    foreign_feed = service.create_feed(
        name="Theirs",
        url="https://theirs.example/feed.csv",
        user_id="bob",
    )
    foreign = service.tracker.create(foreign_feed.feed_id, "bob")

    result = service.stop_imports(user_id)

    assert result.current_job_id == running.job_id
    assert result.dropped_job_ids == []
    stopped = service.get_job(running.job_id, user_id)
    assert stopped.status == JobStatus.FAILED
    assert stopped.error_summary == "stopped by user"
    assert service.get_job(foreign.job_id, "bob").status == JobStatus.PENDING


def test_run_aborts_when_its_job_is_stopped_elsewhere(
    service: ImportService,
    feed: FeedView,
    user_id: str,
) -> None:
    other_process = ImportService(
        settings=service.settings,
        repository=service.repository,
        fetcher=service.fetcher,
    )
    service.fetcher.bodies[feed.url] = _csv(  # type: ignore[attr-defined]
        "http://a,A,1",
        "http://b,B,1",
        "http://c,C,1",
        "http://d,D,1",
        "http://e,E,1",
    )
    stops = []

    def _stop_after_first_batch(progress) -> None:
        if progress.batch_number == 1:
            stops.append(other_process.stop_imports(user_id))

    service.queue.on_progress = _stop_after_first_batch
    queued = service.enqueue_import(feed.feed_id, user_id)

    summary = service.queue.process_next()

    assert summary is not None
    assert summary.status == JobStatus.FAILED
    assert stops[0].current_job_id == queued.job_id
    job = service.get_job(queued.job_id, user_id)
    assert job.status == JobStatus.FAILED
    assert job.error_summary == "stopped by user"
    assert service.repository.get_product_by_url("http://e") is None
    stored_feed = service.repository.get_feed(feed.feed_id)
    assert stored_feed is not None
    assert stored_feed.import_count == 0


def test_register_feeds_reports_failures_and_keeps_going(
    service: ImportService,
    user_id: str,
) -> None:
    service.create_feed(name="Existing", url="https://existing.example/f.csv", user_id=user_id)

    result = service.register_feeds(
        [
            FeedRegistration(name="First", url="https://first.example/f.csv"),
            FeedRegistration(name="Dup", url="https://existing.example/f.csv"),
            FeedRegistration(name="", url="https://noname.example/f.csv"),
            FeedRegistration(name="Paused", url="https://paused.example/f.csv", active=False),
        ],
        user_id,
    )

    assert result.total == 4
    assert [(feed.name, feed.active) for feed in result.created] == [
        ("First", True),
        ("Paused", False),
    ]
    assert [(failure.name, failure.error) for failure in result.failures] == [
        ("Dup", "Feed with this URL already exists: https://existing.example/f.csv"),
        ("Unknown", "Feed name must not be empty"),
    ]
    assert len(service.list_feeds(user_id)) == 3
