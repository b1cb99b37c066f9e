"""Import service facade: the operations exposed to the CLI and other callers."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from datetime import datetime, timedelta

from feed_importer.config import Settings
from feed_importer.http.fetcher import FeedFetcher, HttpFeedFetcher
from feed_importer.importing.cache import ReadCache
from feed_importer.importing.engine import ProgressCallback, ReconciliationEngine
from feed_importer.importing.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from feed_importer.importing.models import (
    BulkEnqueueResult,
    DailyImportStats,
    EnqueueResult,
    FeedRegistration,
    FeedRegistrationFailure,
    FeedRegistrationResult,
    FeedView,
    GlobalImportStatus,
    HistoryTimeframe,
    ImportJobView,
    JobPage,
    JobStatus,
    PriceHistoryView,
    ProductPage,
    StopResult,
)
from feed_importer.importing.price_history import PriceHistoryRecorder
from feed_importer.importing.queue import ImportQueue
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.storage.common import utc_now
from feed_importer.importing.tracker import STOPPED_BY_USER, ImportJobTracker

logger = logging.getLogger(__name__)

_TIMEFRAME_DAYS = {
    HistoryTimeframe.WEEK: 7,
    HistoryTimeframe.MONTH: 30,
    HistoryTimeframe.YEAR: 365,
}


class ImportService:
    """Owns the repository, queue and cache for one process."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: CatalogRepository,
        fetcher: FeedFetcher,
        cache: ReadCache | None = None,
        on_progress: ProgressCallback | None = None,
        owns_fetcher: bool = False,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.fetcher = fetcher
        self._owns_fetcher = owns_fetcher
        self.cache = cache or ReadCache(ttl_seconds=settings.cache.ttl_seconds)
        self.tracker = ImportJobTracker(
            repository=repository,
            cache=self.cache,
            error_details_cap=settings.imports.error_details_cap,
        )
        self.engine = ReconciliationEngine(
            settings=settings.imports,
            repository=repository,
            fetcher=fetcher,
            tracker=self.tracker,
            recorder=PriceHistoryRecorder(repository),
            cache=self.cache,
        )
        self.queue = ImportQueue(engine=self.engine, tracker=self.tracker, on_progress=on_progress)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        fetcher: FeedFetcher | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ImportService:
        """Open the database, apply migrations, and wire an HTTP fetcher."""

        repository = CatalogRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        repository.init_schema()
        owns_fetcher = fetcher is None
        if fetcher is None:
            fetcher = HttpFeedFetcher(
                timeout_seconds=settings.fetch.timeout_seconds,
                connect_timeout_seconds=settings.fetch.connect_timeout_seconds,
                max_retries=settings.fetch.max_retries,
                user_agent=settings.fetch.user_agent,
            )
        return cls(
            settings=settings,
            repository=repository,
            fetcher=fetcher,
            on_progress=on_progress,
            owns_fetcher=owns_fetcher,
        )

    def close(self) -> None:
        self.queue.shutdown(drain=False, timeout=15)
        if self._owns_fetcher and isinstance(self.fetcher, HttpFeedFetcher):
            self.fetcher.close()
        self.repository.close()

    def recover_stale_jobs(self) -> list[str]:
        stale_after = timedelta(seconds=self.settings.imports.job_stale_after_seconds)
        return self.tracker.recover_stale(stale_after=stale_after)

    # -- feeds ----------------------------------------------------------------

    def create_feed(
        self,
        *,
        name: str,
        url: str,
        user_id: str,
        active: bool = True,
    ) -> FeedView:
        if not name.strip():
            raise InvalidStateError(message="Feed name must not be empty")
        if not url.strip().lower().startswith(("http://", "https://")):
            raise InvalidStateError(message=f"Feed URL must be http(s): {url}")
        feed = self.repository.create_feed(name=name, url=url, owner_id=user_id, active=active)
        logger.info("Created feed %s (%s)", feed.feed_id, feed.url)
        return feed

    def register_feeds(
        self,
        registrations: Sequence[FeedRegistration],
        user_id: str,
    ) -> FeedRegistrationResult:
        """Create each feed independently; invalid or duplicate entries are reported, not raised."""

        result = FeedRegistrationResult(total=len(registrations))
        for registration in registrations:
            try:
                feed = self.create_feed(
                    name=registration.name,
                    url=registration.url,
                    user_id=user_id,
                    active=registration.active,
                )
            except (InvalidStateError, ConflictError) as error:
                result.failures.append(
                    FeedRegistrationFailure(
                        name=registration.name or "Unknown",
                        url=registration.url or "Unknown",
                        error=error.message,
                    ),
                )
                continue
            result.created.append(feed)
        logger.info(
            "Registered %d of %d feeds for user %s",
            len(result.created),
            result.total,
            user_id,
        )
        return result

    def get_feed(self, feed_id: str, user_id: str) -> FeedView:
        feed = self.repository.get_feed(feed_id)
        if feed is None:
            raise NotFoundError(message=f"Feed not found: {feed_id}")
        if feed.owner_id != user_id:
            raise ForbiddenError(message=f"Feed {feed_id} belongs to another user")
        return feed

    def list_feeds(self, user_id: str, *, active_only: bool = False) -> list[FeedView]:
        return self.repository.list_feeds(owner_id=user_id, active_only=active_only)

    def set_feed_active(self, feed_id: str, user_id: str, *, active: bool) -> FeedView:
        self.get_feed(feed_id, user_id)
        feed = self.repository.set_feed_active(feed_id, active=active)
        if feed is None:
            raise NotFoundError(message=f"Feed not found: {feed_id}")
        return feed

    # -- imports --------------------------------------------------------------

    def enqueue_import(self, feed_id: str, user_id: str) -> EnqueueResult:
        feed = self.get_feed(feed_id, user_id)
        if not feed.active:
            raise InvalidStateError(message=f"Feed {feed_id} is inactive")
        return self.queue.enqueue(feed, user_id)

    def enqueue_all_active_imports(self, user_id: str) -> BulkEnqueueResult:
        feeds = self.repository.list_feeds(owner_id=user_id, active_only=True)
        results = self.queue.enqueue_many(feeds, user_id)
        job_ids = [result.job_id for result in results]
        logger.info("Queued %d feeds for user %s", len(job_ids), user_id)
        return BulkEnqueueResult(queued_count=len(job_ids), job_ids=job_ids)

    def stop_imports(self, user_id: str) -> StopResult:
        """Stop the user's imports in this process and fail their persisted active jobs.

        Jobs owned by another process are failed in the database; that process
        aborts the run at its next batch boundary when it finds the job terminal.
        """

        logger.info("Stop requested by %s", user_id)
        result = self.queue.stop_all(user_id)
        handled = {*result.dropped_job_ids, result.current_job_id}
        for job in self.repository.list_active_jobs(owner_id=user_id):
            if job.job_id in handled:
                continue
            try:
                self.tracker.fail(job.job_id, STOPPED_BY_USER)
            except InvalidStateError:
                continue
            if job.status == JobStatus.PROCESSING and result.current_job_id is None:
                result.current_job_id = job.job_id
            else:
                result.dropped_job_ids.append(job.job_id)
        return result

    def get_job(self, job_id: str, user_id: str) -> ImportJobView:
        job = self.tracker.get(job_id)
        if job.owner_id != user_id:
            raise ForbiddenError(message=f"Import job {job_id} belongs to another user")
        return job

    def list_jobs(
        self,
        user_id: str,
        *,
        feed_id: str | None = None,
        status: JobStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> JobPage:
        page = max(1, page)
        limit = max(1, limit)
        key = (
            f"import-history:{user_id}:{feed_id or '*'}:"
            f"{status.value if status else '*'}:{page}:{limit}"
        )

        def _load() -> JobPage:
            total, items = self.repository.list_jobs(
                owner_id=user_id,
                feed_id=feed_id,
                status=status,
                offset=(page - 1) * limit,
                limit=limit,
            )
            return JobPage(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit),
                items=items,
            )

        return self.cache.get_or_load(key, _load)

    def get_global_status(self, user_id: str) -> GlobalImportStatus:
        active = self.repository.list_active_jobs(owner_id=user_id)
        current = next((job for job in active if job.status == JobStatus.PROCESSING), None)
        queued = [job for job in active if job.status == JobStatus.PENDING]

        completed = self.repository.list_completed_jobs_since(
            owner_id=user_id,
            since=_local_midnight(),
        )
        stats = DailyImportStats()
        for job in completed:
            stats.total_processed += job.total_processed
            stats.inserted += job.inserted
            stats.updated += job.updated
            stats.deactivated += job.deactivated
            stats.errors += job.error_count

        return GlobalImportStatus(
            is_importing=bool(active),
            current_job=current,
            queued_jobs=queued,
            today_stats=stats,
            active_feed_count=self.repository.count_active_feeds(owner_id=user_id),
            processed_feeds_today=len({job.feed_id for job in completed}),
        )

    # -- catalog --------------------------------------------------------------

    def list_products(
        self,
        feed_id: str,
        user_id: str,
        *,
        active: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> ProductPage:
        self.get_feed(feed_id, user_id)
        page = max(1, page)
        limit = max(1, limit)
        key = f"products:{feed_id}:{active}:{page}:{limit}"

        def _load() -> ProductPage:
            total, items = self.repository.list_products(
                feed_id=feed_id,
                active=active,
                offset=(page - 1) * limit,
                limit=limit,
            )
            return ProductPage(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit),
                items=items,
            )

        return self.cache.get_or_load(key, _load)

    def get_price_history(
        self,
        product_id: str,
        user_id: str,
        *,
        timeframe: HistoryTimeframe = HistoryTimeframe.ALL,
    ) -> list[PriceHistoryView]:
        product = self.repository.get_product(product_id)
        if product is None:
            raise NotFoundError(message=f"Product not found: {product_id}")
        self.get_feed(product.feed_id, user_id)

        days = _TIMEFRAME_DAYS.get(timeframe)
        since = utc_now() - timedelta(days=days) if days is not None else None
        return self.cache.get_or_load(
            f"price-history:{product_id}:{timeframe.value}",
            lambda: self.repository.list_price_history(product_id, since=since),
        )


def _local_midnight() -> datetime:
    return datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
