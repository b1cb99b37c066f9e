"""Controllers for feed, import and catalog CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from feed_importer.config import Settings
from feed_importer.http.fetcher import FeedFetcher
from feed_importer.importing.decoder import decode_csv
from feed_importer.importing.engine import ImportRunSummary
from feed_importer.importing.models import (
    ErrorDetail,
    FeedRegistration,
    FeedView,
    HistoryTimeframe,
    ImportJobView,
    ImportProgress,
    JobStatus,
)
from feed_importer.importing.service import ImportService

logger = logging.getLogger(__name__)

_INACTIVE_VALUES = frozenset({"0", "false", "no", "inactive"})


@dataclass(slots=True)
class FeedAddCommand:
    """CLI inputs for registering a feed."""

    db_path: Path | None
    name: str
    url: str
    activate: bool


@dataclass(slots=True)
class FeedImportCommand:
    """CLI inputs for registering feeds listed in a CSV file."""

    db_path: Path | None
    path: Path


@dataclass(slots=True)
class FeedListCommand:
    """CLI inputs for listing feeds."""

    db_path: Path | None
    active_only: bool


@dataclass(slots=True)
class FeedActivationCommand:
    """CLI inputs for activating or deactivating a feed."""

    db_path: Path | None
    feed_id: str
    active: bool


@dataclass(slots=True)
class ImportRunCommand:
    """CLI inputs for importing one feed in the foreground."""

    db_path: Path | None
    feed_id: str


@dataclass(slots=True)
class ImportAllCommand:
    """CLI inputs for importing every active feed."""

    db_path: Path | None


@dataclass(slots=True)
class ImportStopCommand:
    """CLI inputs for stopping the current user's imports."""

    db_path: Path | None


@dataclass(slots=True)
class ImportStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class ImportJobsCommand:
    """CLI inputs for paging through import history."""

    db_path: Path | None
    feed_id: str | None
    status: JobStatus | None
    page: int
    limit: int


@dataclass(slots=True)
class ImportShowCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ProductListCommand:
    """CLI inputs for listing a feed's catalog products."""

    db_path: Path | None
    feed_id: str
    active: bool | None
    page: int
    limit: int


@dataclass(slots=True)
class ProductHistoryCommand:
    db_path: Path | None
    product_id: str
    timeframe: HistoryTimeframe


class ImportCliController:
    """Coordinates CLI command execution against the import service."""

    def __init__(self, *, fetcher: FeedFetcher | None = None) -> None:
        self.fetcher = fetcher

    # -- feeds ----------------------------------------------------------------

    def add_feed(self, command: FeedAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            feed = service.create_feed(
                name=command.name,
                url=command.url,
                user_id=settings.user_context.user_id,
                active=command.activate,
            )
        return [f"Feed created: {_format_feed(feed)}"]

    def import_feeds(self, command: FeedImportCommand) -> list[str]:
        registrations = [
            FeedRegistration(
                name=_cell(row, "name"),
                url=_cell(row, "url"),
                active=_cell(row, "active").lower() not in _INACTIVE_VALUES,
            )
            for row in decode_csv(command.path.read_bytes())
        ]
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            result = service.register_feeds(registrations, settings.user_context.user_id)

        lines = [f"Registered {len(result.created)} out of {result.total} feeds"]
        lines.extend(f"  created {_format_feed(feed)}" for feed in result.created)
        lines.extend(
            f"  failed name={failure.name} url={failure.url}: {failure.error}"
            for failure in result.failures
        )
        return lines

    def list_feeds(self, command: FeedListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            feeds = service.list_feeds(
                settings.user_context.user_id,
                active_only=command.active_only,
            )
        if not feeds:
            return ["No feeds registered."]
        return [f"Feeds: {len(feeds)}", *(f"  {_format_feed(feed)}" for feed in feeds)]

    def set_feed_active(self, command: FeedActivationCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            feed = service.set_feed_active(
                command.feed_id,
                settings.user_context.user_id,
                active=command.active,
            )
        state = "activated" if feed.active else "deactivated"
        return [f"Feed {state}: {_format_feed(feed)}"]

    # -- imports --------------------------------------------------------------

    def run_import(self, command: ImportRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            service.recover_stale_jobs()
            result = service.enqueue_import(command.feed_id, settings.user_context.user_id)
            summaries = service.queue.run_foreground()
        lines = [f"Import queued: job_id={result.job_id} feed_id={result.feed_id}"]
        lines.extend(_format_summary(summary) for summary in summaries)
        return lines

    def run_all(self, command: ImportAllCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            service.recover_stale_jobs()
            bulk = service.enqueue_all_active_imports(settings.user_context.user_id)
            summaries = service.queue.run_foreground()
        if bulk.queued_count == 0:
            return ["No active feeds to import."]
        lines = [f"Imports queued: {bulk.queued_count}"]
        lines.extend(_format_summary(summary) for summary in summaries)
        return lines

    def stop_imports(self, command: ImportStopCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            result = service.stop_imports(settings.user_context.user_id)
        if result.stopped_count == 0:
            return ["No imports to stop."]
        lines = [f"Imports stopped: {result.stopped_count}"]
        if result.current_job_id is not None:
            lines.append(f"  current job_id={result.current_job_id}")
        lines.extend(f"  dropped job_id={job_id}" for job_id in result.dropped_job_ids)
        return lines

    def status(self, command: ImportStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            status = service.get_global_status(settings.user_context.user_id)

        today = status.today_stats
        lines = [
            f"Importing: {'yes' if status.is_importing else 'no'}",
            f"Active feeds: {status.active_feed_count} "
            f"processed_today={status.processed_feeds_today}",
            "Today: "
            f"processed={today.total_processed} inserted={today.inserted} "
            f"updated={today.updated} deactivated={today.deactivated} errors={today.errors}",
        ]
        if status.current_job is not None:
            lines.append(f"Current: {_format_job(status.current_job)}")
        for job in status.queued_jobs:
            lines.append(f"Queued: {_format_job(job)}")
        return lines

    def list_jobs(self, command: ImportJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            page = service.list_jobs(
                settings.user_context.user_id,
                feed_id=command.feed_id,
                status=command.status,
                page=command.page,
                limit=command.limit,
            )
        lines = [f"Import jobs: page {page.page}/{max(1, page.total_pages)} total={page.total}"]
        lines.extend(f"  {_format_job(job)}" for job in page.items)
        return lines

    def show_job(self, command: ImportShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            job = service.get_job(command.job_id, settings.user_context.user_id)

        lines = [
            _format_job(job),
            f"  feed={job.feed_name} ({job.feed_id})",
            f"  created={job.created_at.isoformat()} "
            f"started={job.started_at.isoformat() if job.started_at else '-'} "
            f"ended={job.ended_at.isoformat() if job.ended_at else '-'} "
            f"duration={job.duration_seconds:.1f}s",
        ]
        if job.error_summary:
            lines.append(f"  error_summary={job.error_summary}")
        lines.extend(f"  {_format_error(detail)}" for detail in job.error_details)
        return lines

    # -- catalog --------------------------------------------------------------

    def list_products(self, command: ProductListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            page = service.list_products(
                command.feed_id,
                settings.user_context.user_id,
                active=command.active,
                page=command.page,
                limit=command.limit,
            )
        lines = [f"Products: page {page.page}/{max(1, page.total_pages)} total={page.total}"]
        for product in page.items:
            old_price = f" old_price={product.old_price:g}" if product.old_price is not None else ""
            lines.append(
                f"  {product.product_id} price={product.price:g}{old_price} "
                f"active={'yes' if product.active else 'no'} "
                f"url={product.url} title={product.title}",
            )
        return lines

    def price_history(self, command: ProductHistoryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with self._service(settings) as service:
            entries = service.get_price_history(
                command.product_id,
                settings.user_context.user_id,
                timeframe=command.timeframe,
            )
        if not entries:
            return [f"No price history for {command.product_id} ({command.timeframe.value})."]
        lines = [f"Price history: {command.product_id} entries={len(entries)}"]
        for entry in entries:
            previous = f"{entry.previous_price:g}" if entry.previous_price is not None else "-"
            lines.append(
                f"  {entry.recorded_at.isoformat()} price={entry.price:g} "
                f"previous={previous} job_id={entry.job_id}",
            )
        return lines

    @contextmanager
    def _service(self, settings: Settings) -> Iterator[ImportService]:
        service = ImportService.from_settings(
            settings,
            fetcher=self.fetcher,
            on_progress=_log_progress,
        )
        try:
            yield service
        finally:
            service.close()


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _cell(row: dict[str, str], column: str) -> str:
    for key, value in row.items():
        if key.lower() == column:
            return value
    return ""


def _log_progress(progress: ImportProgress) -> None:
    logger.info(
        "Job %s: batch %d/%d processed=%d errors=%d",
        progress.job_id,
        progress.batch_number,
        progress.batch_count,
        progress.counters.total_processed,
        progress.counters.error_count,
    )


def _format_feed(feed: FeedView) -> str:
    last = feed.last_imported_at.isoformat() if feed.last_imported_at else "never"
    return (
        f"{feed.feed_id} name={feed.name} url={feed.url} "
        f"active={'yes' if feed.active else 'no'} imports={feed.import_count} last={last}"
    )


def _format_job(job: ImportJobView) -> str:
    return (
        f"job_id={job.job_id} feed={job.feed_name} status={job.status.value} "
        f"processed={job.total_processed} inserted={job.inserted} updated={job.updated} "
        f"deactivated={job.deactivated} errors={job.error_count}"
    )


def _format_summary(summary: ImportRunSummary) -> str:
    counters = summary.counters
    line = (
        "Import finished: "
        f"job_id={summary.job_id} status={summary.status.value} "
        f"processed={counters.total_processed} inserted={counters.inserted} "
        f"updated={counters.updated} deactivated={counters.deactivated} "
        f"errors={counters.error_count}"
    )
    if summary.error_summary:
        line += f" reason={summary.error_summary}"
    return line


def _format_error(detail: ErrorDetail) -> str:
    return f"error[{detail.index}] url={detail.url} title={detail.title}: {detail.error}"
