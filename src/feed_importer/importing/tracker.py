"""Import job tracker: the single write path for persisted job records."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from feed_importer.importing.cache import JOBS_PATTERN, CacheInvalidator
from feed_importer.importing.errors import InvalidStateError, NotFoundError
from feed_importer.importing.models import (
    ErrorDetail,
    ImportCounters,
    ImportJobView,
    JobStatus,
)
from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.storage.common import utc_now

logger = logging.getLogger(__name__)

SYSTEM_ERROR_URL = "system"
SYSTEM_ERROR_TITLE = "System Error"
STOPPED_BY_USER = "stopped by user"
INTERRUPTED = "Import interrupted before completion (process restart or crash)."


def system_error_detail(message: str) -> ErrorDetail:
    """Synthetic error entry describing a run-level failure."""

    return ErrorDetail(index=0, error=message, url=SYSTEM_ERROR_URL, title=SYSTEM_ERROR_TITLE)


class ImportJobTracker:
    """Creates and mutates import jobs; every change goes through :meth:`update`."""

    def __init__(
        self,
        *,
        repository: CatalogRepository,
        cache: CacheInvalidator,
        error_details_cap: int = 20,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.error_details_cap = error_details_cap

    def create(self, feed_id: str, user_id: str) -> ImportJobView:
        feed = self.repository.get_feed(feed_id)
        if feed is None:
            raise NotFoundError(message=f"Feed not found: {feed_id}")

        job = self.repository.create_job(feed_id=feed_id, feed_name=feed.name, owner_id=user_id)
        self.cache.clear_by_pattern(JOBS_PATTERN)
        logger.info("Created import job %s for feed %s (%s)", job.job_id, feed.name, feed_id)
        return job

    def get(self, job_id: str) -> ImportJobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise NotFoundError(message=f"Import job not found: {job_id}")
        return job

    def update(self, job_id: str, **changes: Any) -> ImportJobView:
        current = self.get(job_id)
        if current.status.is_terminal:
            raise InvalidStateError(
                message=f"Import job {job_id} is already {current.status.value}",
            )
        if "error_details" in changes:
            changes["error_details"] = list(changes["error_details"])[: self.error_details_cap]

        job = self.repository.update_job(job_id, changes)
        self.cache.clear_by_pattern(JOBS_PATTERN)
        if "status" in changes:
            logger.info("Import job %s -> %s", job_id, job.status.value)
        return job

    def start(self, job_id: str) -> ImportJobView:
        now = utc_now()
        return self.update(
            job_id,
            status=JobStatus.PROCESSING,
            started_at=now,
            heartbeat_at=now,
        )

    def report_progress(self, job_id: str, counters: ImportCounters) -> ImportJobView:
        return self.update(job_id, heartbeat_at=utc_now(), **_counter_fields(counters))

    def complete(self, job_id: str, counters: ImportCounters) -> ImportJobView:
        job = self.get(job_id)
        now = utc_now()
        return self.update(
            job_id,
            status=JobStatus.COMPLETED,
            ended_at=now,
            heartbeat_at=now,
            duration_seconds=_duration(job.started_at, now),
            **_counter_fields(counters),
        )

    def fail(
        self,
        job_id: str,
        reason: str,
        counters: ImportCounters | None = None,
    ) -> ImportJobView:
        """Finalize a job as failed, keeping counters and appending a synthetic error entry."""

        job = self.get(job_id)
        now = utc_now()
        fields: dict[str, Any] = {}
        if counters is not None:
            fields = _counter_fields(counters)
        details = list(fields.pop("error_details", job.error_details))
        details = details[: self.error_details_cap - 1]
        details.append(system_error_detail(reason))
        return self.update(
            job_id,
            status=JobStatus.FAILED,
            ended_at=now,
            heartbeat_at=now,
            duration_seconds=_duration(job.started_at, now),
            error_summary=reason,
            error_details=details,
            **fields,
        )

    def recover_stale(self, *, stale_after: timedelta) -> list[str]:
        """Fail pending/processing jobs left behind by a crashed or restarted process."""

        recovered: list[str] = []
        for job_id in self.repository.list_stale_job_ids(stale_after=stale_after):
            try:
                self.fail(job_id, INTERRUPTED)
            except InvalidStateError:
                continue
            recovered.append(job_id)
            logger.warning("Recovered stale import job %s as failed", job_id)
        return recovered


def _counter_fields(counters: ImportCounters) -> dict[str, Any]:
    return {
        "total_processed": counters.total_processed,
        "inserted": counters.inserted,
        "updated": counters.updated,
        "deactivated": counters.deactivated,
        "error_count": counters.error_count,
        "error_details": list(counters.error_details),
    }


def _duration(started_at: datetime | None, ended_at: datetime) -> float:
    if started_at is None:
        return 0.0
    return max(0.0, (ended_at - started_at).total_seconds())
