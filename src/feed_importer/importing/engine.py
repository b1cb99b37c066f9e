"""Reconciliation of one downloaded feed against the product catalog."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from feed_importer.config import ImportSettings
from feed_importer.http.fetcher import FeedFetcher
from feed_importer.importing.cache import CacheInvalidator, invalidate_catalog
from feed_importer.importing.decoder import decode_csv
from feed_importer.importing.errors import (
    FatalImportError,
    ImportStoppedError,
    InvalidStateError,
    NotFoundError,
    RowValidationError,
)
from feed_importer.importing.merge import parse_row
from feed_importer.importing.models import (
    ErrorDetail,
    FeedView,
    ImportCounters,
    ImportProgress,
    JobStatus,
    UpsertAction,
    UpsertResult,
)
from feed_importer.importing.price_history import PriceHistoryRecorder
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.tracker import ImportJobTracker, system_error_detail

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ImportProgress], None]


class CancellationToken:
    """Cooperative stop signal scoped to a single import run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportStoppedError()


@dataclass(slots=True)
class ImportRunSummary:
    """Outcome of one reconciliation run."""

    job_id: str
    feed_id: str
    status: JobStatus
    counters: ImportCounters
    error_summary: str | None = None


@dataclass(slots=True)
class _RowOutcome:
    index: int
    url: str
    title: str
    result: UpsertResult | None = None
    error: str | None = None


class ReconciliationEngine:
    """Fetches, decodes and applies one feed, then retires products it no longer lists."""

    def __init__(
        self,
        *,
        settings: ImportSettings,
        repository: CatalogRepository,
        fetcher: FeedFetcher,
        tracker: ImportJobTracker,
        recorder: PriceHistoryRecorder,
        cache: CacheInvalidator,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.fetcher = fetcher
        self.tracker = tracker
        self.recorder = recorder
        self.cache = cache

    def run(
        self,
        *,
        job_id: str,
        feed: FeedView,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ImportRunSummary:
        token = token or CancellationToken()
        counters = ImportCounters()
        try:
            self.tracker.start(job_id)
            token.raise_if_cancelled()
            logger.info("Importing feed %s (%s) as job %s", feed.name, feed.url, job_id)

            body = self.fetcher.fetch(feed.url)
            token.raise_if_cancelled()
            rows = decode_csv(body)
            token.raise_if_cancelled()

            prior = self.repository.snapshot_active_product_urls(feed.feed_id)
            seen: set[str] = set()
            batches = _batches(rows, self.settings.batch_size)
            for number, (offset, batch) in enumerate(batches, start=1):
                token.raise_if_cancelled()
                self._process_batch(
                    job_id=job_id,
                    feed_id=feed.feed_id,
                    offset=offset,
                    batch=batch,
                    counters=counters,
                    seen=seen,
                )
                self.tracker.report_progress(job_id, counters)
                if on_progress is not None:
                    on_progress(
                        ImportProgress(
                            job_id=job_id,
                            feed_id=feed.feed_id,
                            batch_number=number,
                            batch_count=len(batches),
                            counters=counters,
                        ),
                    )

            if rows:
                self._retire_missing(feed=feed, prior=prior, seen=seen, counters=counters)
            self.repository.record_feed_import(feed.feed_id)
            invalidate_catalog(self.cache)
            self.tracker.complete(job_id, counters)
        except (FatalImportError, InvalidStateError) as exc:
            logger.warning("Import job %s failed: %s", job_id, exc.message)
            return self._finalize_failed(job_id, feed, counters, exc.message)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Import job %s crashed", job_id)
            return self._finalize_failed(
                job_id,
                feed,
                counters,
                f"internal error: {type(exc).__name__}",
            )

        logger.info(
            "Import job %s completed: processed=%d inserted=%d updated=%d "
            "deactivated=%d errors=%d",
            job_id,
            counters.total_processed,
            counters.inserted,
            counters.updated,
            counters.deactivated,
            counters.error_count,
        )
        return ImportRunSummary(
            job_id=job_id,
            feed_id=feed.feed_id,
            status=JobStatus.COMPLETED,
            counters=counters,
        )

    def _process_batch(
        self,
        *,
        job_id: str,
        feed_id: str,
        offset: int,
        batch: Sequence[Mapping[str, str]],
        counters: ImportCounters,
        seen: set[str],
    ) -> None:
        # Rows sharing a url stay on one worker, in feed order.
        groups: dict[str, list[tuple[int, Mapping[str, str]]]] = {}
        for position, row in enumerate(batch):
            groups.setdefault(_raw_value(row, "url"), []).append((offset + position, row))

        outcomes: list[_RowOutcome] = []
        workers = max(1, min(self.settings.row_workers, len(groups)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="import-row") as pool:
            futures = [
                pool.submit(self._process_group, group, feed_id=feed_id, job_id=job_id)
                for group in groups.values()
            ]
            for future in futures:
                outcomes.extend(future.result())

        for outcome in sorted(outcomes, key=lambda item: item.index):
            counters.total_processed += 1
            if outcome.result is None:
                counters.add_error(
                    ErrorDetail(
                        index=outcome.index,
                        error=outcome.error or "unknown error",
                        url=outcome.url,
                        title=outcome.title,
                    ),
                    cap=self.settings.error_details_cap,
                )
                continue
            seen.add(outcome.url)
            if outcome.result.action == UpsertAction.INSERTED:
                counters.inserted += 1
            else:
                counters.updated += 1

    def _process_group(
        self,
        group: Sequence[tuple[int, Mapping[str, str]]],
        *,
        feed_id: str,
        job_id: str,
    ) -> list[_RowOutcome]:
        return [
            self._process_row(index, row, feed_id=feed_id, job_id=job_id)
            for index, row in group
        ]

    def _process_row(
        self,
        index: int,
        row: Mapping[str, str],
        *,
        feed_id: str,
        job_id: str,
    ) -> _RowOutcome:
        url = _raw_value(row, "url")
        title = _raw_value(row, "title")
        try:
            fields = parse_row(row)
        except RowValidationError as exc:
            return _RowOutcome(index=index, url=url, title=title, error=exc.message)

        try:
            result = self.repository.upsert_product(feed_id=feed_id, fields=fields)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Row %d (%s) of job %s failed: %r", index, url, job_id, exc)
            return _RowOutcome(
                index=index,
                url=url,
                title=title,
                error=f"internal error: {type(exc).__name__}",
            )

        self.recorder.record(result, feed_id=feed_id, job_id=job_id)
        return _RowOutcome(index=index, url=fields.url, title=fields.title, result=result)

    def _retire_missing(
        self,
        *,
        feed: FeedView,
        prior: Mapping[str, str],
        seen: set[str],
        counters: ImportCounters,
    ) -> None:
        missing = [url for url in prior if url not in seen]
        if not missing:
            return

        prior_count = len(prior)
        threshold = prior_count * self.settings.retirement_min_ratio
        if (
            prior_count >= self.settings.retirement_min_prior
            and len(seen) < threshold
            and not self._shrink_confirmed(feed.feed_id, threshold)
        ):
            message = (
                f"Deactivation skipped: feed listed {len(seen)} products, "
                f"catalog had {prior_count} active"
            )
            logger.warning("Feed %s: %s", feed.feed_id, message)
            counters.add_error(system_error_detail(message), cap=self.settings.error_details_cap)
            return

        counters.deactivated += self.repository.deactivate_products(
            feed_id=feed.feed_id,
            urls=missing,
        )

    def _shrink_confirmed(self, feed_id: str, threshold: float) -> bool:
        """True when the previous completed run already listed fewer rows than ``threshold``."""

        previous = self.repository.last_completed_job(feed_id)
        return previous is not None and previous.total_processed < threshold

    def _finalize_failed(
        self,
        job_id: str,
        feed: FeedView,
        counters: ImportCounters,
        reason: str,
    ) -> ImportRunSummary:
        try:
            self.tracker.fail(job_id, reason, counters)
        except (InvalidStateError, NotFoundError):
            logger.warning("Import job %s was already finalized; keeping its state", job_id)
        return ImportRunSummary(
            job_id=job_id,
            feed_id=feed.feed_id,
            status=JobStatus.FAILED,
            counters=counters,
            error_summary=reason,
        )


def _batches(
    rows: Sequence[Mapping[str, str]],
    size: int,
) -> list[tuple[int, Sequence[Mapping[str, str]]]]:
    return [(start, rows[start : start + size]) for start in range(0, len(rows), size)]


def _raw_value(row: Mapping[str, str], column: str) -> str:
    for key, value in row.items():
        if key.strip().lower() == column:
            return (value or "").strip()
    return ""
