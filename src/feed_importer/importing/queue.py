"""Single-flight FIFO queue of feed imports."""

from __future__ import annotations

import logging
import signal
import threading
from collections import deque
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from feed_importer.importing.engine import (
    CancellationToken,
    ImportRunSummary,
    ProgressCallback,
    ReconciliationEngine,
)
from feed_importer.importing.errors import InvalidStateError
from feed_importer.importing.models import EnqueueResult, FeedView, StopResult
from feed_importer.importing.tracker import STOPPED_BY_USER, ImportJobTracker

logger = logging.getLogger(__name__)

_NEVER = datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True)
class QueueEntry:
    """One feed waiting for (or undergoing) reconciliation."""

    job_id: str
    feed: FeedView
    user_id: str
    token: CancellationToken = field(default_factory=CancellationToken)


@dataclass(slots=True)
class QueueSnapshot:
    """Point-in-time view of the queue."""

    current: QueueEntry | None
    queued: list[QueueEntry]

    @property
    def is_importing(self) -> bool:
        return self.current is not None or bool(self.queued)


def order_feeds_for_bulk(feeds: Iterable[FeedView]) -> list[FeedView]:
    """Never-imported feeds first, then oldest import first, then by name."""

    return sorted(
        feeds,
        key=lambda feed: (
            feed.last_imported_at is not None,
            feed.last_imported_at or _NEVER,
            feed.name.casefold(),
        ),
    )


class ImportQueue:
    """Runs queued imports one at a time, in enqueue order.

    Entries are processed either synchronously through :meth:`process_next`
    and :meth:`drain`, or by a background thread started with :meth:`start`.
    A feed is queued at most once while it is waiting or running.
    """

    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        tracker: ImportJobTracker,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.engine = engine
        self.tracker = tracker
        self.on_progress = on_progress
        self._entries: deque[QueueEntry] = deque()
        self._current: QueueEntry | None = None
        self._condition = threading.Condition()
        self._closing = False
        self._stop_requested = False
        self._worker_thread: threading.Thread | None = None

    def enqueue(self, feed: FeedView, user_id: str) -> EnqueueResult:
        with self._condition:
            existing = self._find(feed.feed_id)
            if existing is not None:
                logger.info("Feed %s already queued as job %s", feed.feed_id, existing.job_id)
                return EnqueueResult(job_id=existing.job_id, feed_id=feed.feed_id, created=False)

            job = self.tracker.create(feed.feed_id, user_id)
            self._entries.append(QueueEntry(job_id=job.job_id, feed=feed, user_id=user_id))
            self._condition.notify_all()
        return EnqueueResult(job_id=job.job_id, feed_id=feed.feed_id, created=True)

    def enqueue_many(self, feeds: Iterable[FeedView], user_id: str) -> list[EnqueueResult]:
        return [self.enqueue(feed, user_id) for feed in order_feeds_for_bulk(feeds)]

    def process_next(self) -> ImportRunSummary | None:
        """Run the oldest queued entry in the calling thread."""

        with self._condition:
            if self._current is not None or not self._entries:
                return None
            entry = self._entries.popleft()
            self._current = entry

        try:
            return self.engine.run(
                job_id=entry.job_id,
                feed=entry.feed,
                token=entry.token,
                on_progress=self.on_progress,
            )
        finally:
            with self._condition:
                self._current = None
                self._condition.notify_all()

    def drain(self) -> list[ImportRunSummary]:
        """Process entries until the queue is empty."""

        summaries: list[ImportRunSummary] = []
        while True:
            summary = self.process_next()
            if summary is None:
                return summaries
            summaries.append(summary)

    def run_foreground(self) -> list[ImportRunSummary]:
        """Drain in the calling thread; SIGINT/SIGTERM stop every import."""

        summaries: list[ImportRunSummary] = []
        self._stop_requested = False
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.process_next()
                if summary is None:
                    break
                summaries.append(summary)
        if self._stop_requested:
            self.stop_all()
        return summaries

    def start(self) -> None:
        if self._worker_thread is not None:
            return
        with self._condition:
            self._closing = False
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="import-queue",
        )
        self._worker_thread.start()
        logger.info("Import queue worker started")

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: self._current is None and not self._entries,
                timeout=timeout,
            )

    def shutdown(self, *, drain: bool = True, timeout: float | None = None) -> None:
        if not drain:
            self.stop_all()
        with self._condition:
            self._closing = True
            self._condition.notify_all()
        if self._worker_thread is not None:
            self._worker_thread.join(timeout=timeout)
            self._worker_thread = None
            logger.info("Import queue worker stopped")

    def stop_all(self, user_id: str | None = None) -> StopResult:
        """Drop queued entries and cancel the running one, optionally only ``user_id``'s."""

        with self._condition:
            dropped = [
                entry
                for entry in self._entries
                if user_id is None or entry.user_id == user_id
            ]
            for entry in dropped:
                self._entries.remove(entry)
            current = self._current
            if current is not None and user_id is not None and current.user_id != user_id:
                current = None
            if current is not None:
                current.token.cancel()
            self._condition.notify_all()

        for entry in dropped:
            try:
                self.tracker.fail(entry.job_id, STOPPED_BY_USER)
            except InvalidStateError:
                logger.warning("Dropped job %s was already finalized", entry.job_id)
        logger.info(
            "Stopped imports: dropped=%d current=%s",
            len(dropped),
            current.job_id if current is not None else "-",
        )
        return StopResult(
            dropped_job_ids=[entry.job_id for entry in dropped],
            current_job_id=current.job_id if current is not None else None,
        )

    def snapshot(self) -> QueueSnapshot:
        with self._condition:
            return QueueSnapshot(current=self._current, queued=list(self._entries))

    def _find(self, feed_id: str) -> QueueEntry | None:
        if self._current is not None and self._current.feed.feed_id == feed_id:
            return self._current
        for entry in self._entries:
            if entry.feed.feed_id == feed_id:
                return entry
        return None

    def _worker_loop(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(
                    lambda: (self._closing and not self._entries)
                    or (bool(self._entries) and self._current is None),
                )
                if not self._entries:
                    return
            try:
                self.process_next()
            except Exception:
                logger.exception("Import queue worker error")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Received %s; stopping imports", signal.Signals(signum).name)
            self._request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self) -> None:
        self._stop_requested = True
        current = self._current
        if current is not None:
            current.token.cancel()
