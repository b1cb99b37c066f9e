"""Domain models for feeds, catalog products, price history, and import jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle states for import jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class UpsertAction(str, Enum):
    """Operation result for product upsert."""

    INSERTED = "inserted"
    UPDATED = "updated"


class HistoryTimeframe(str, Enum):
    """Lookback windows for price history reads."""

    ALL = "all"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(slots=True)
class FeedView:
    """Readable feed record."""

    feed_id: str
    name: str
    url: str
    owner_id: str
    active: bool
    last_imported_at: datetime | None
    import_count: int
    created_at: datetime


@dataclass(slots=True)
class ProductFields:
    """Allow-listed product fields taken from one validated feed row."""

    url: str
    title: str
    price: float
    old_price: float | None = None
    external_id: str | None = None
    aff_code: str | None = None
    campaign_name: str | None = None
    image_urls: str | None = None
    category: str | None = None
    subcategory: str | None = None
    brand: str | None = None
    description: str | None = None


@dataclass(slots=True)
class ProductView:
    """Readable catalog product."""

    product_id: str
    feed_id: str
    url: str
    title: str
    price: float
    old_price: float | None
    active: bool
    external_id: str | None
    aff_code: str | None
    campaign_name: str | None
    image_urls: str | None
    category: str | None
    subcategory: str | None
    brand: str | None
    description: str | None
    last_updated_at: datetime
    created_at: datetime


@dataclass(slots=True)
class UpsertResult:
    """Result of applying one feed row to the catalog."""

    product_id: str
    action: UpsertAction
    price: float
    previous_price: float | None

    @property
    def price_changed(self) -> bool:
        return self.action == UpsertAction.INSERTED or self.previous_price != self.price


@dataclass(slots=True)
class PriceHistoryView:
    """One immutable price observation."""

    entry_id: int
    product_id: str
    price: float
    previous_price: float | None
    feed_id: str
    job_id: str
    recorded_at: datetime


@dataclass(slots=True)
class ErrorDetail:
    """One entry of a job's capped error list."""

    index: int
    error: str
    url: str
    title: str

    def to_dict(self) -> dict[str, object]:
        return {"index": self.index, "error": self.error, "url": self.url, "title": self.title}

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> ErrorDetail:
        return cls(
            index=int(payload.get("index", 0)),  # type: ignore[arg-type]
            error=str(payload.get("error", "")),
            url=str(payload.get("url", "")),
            title=str(payload.get("title", "")),
        )


@dataclass(slots=True)
class ImportCounters:
    """Counters accumulated during one reconciliation run."""

    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    deactivated: int = 0
    error_count: int = 0
    error_details: list[ErrorDetail] = field(default_factory=list)

    def add_error(self, detail: ErrorDetail, *, cap: int) -> None:
        self.error_count += 1
        if len(self.error_details) < cap:
            self.error_details.append(detail)


@dataclass(slots=True)
class ImportJobView:
    """Readable import job record."""

    job_id: str
    feed_id: str
    feed_name: str
    owner_id: str
    status: JobStatus
    total_processed: int
    inserted: int
    updated: int
    deactivated: int
    error_count: int
    error_details: list[ErrorDetail]
    error_summary: str | None
    created_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    ended_at: datetime | None
    duration_seconds: float


@dataclass(slots=True)
class JobPage:
    """Paginated view of import jobs."""

    page: int
    limit: int
    total: int
    total_pages: int
    items: list[ImportJobView]


@dataclass(slots=True)
class DailyImportStats:
    """Aggregated counters of jobs completed since the start of the day."""

    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    deactivated: int = 0
    errors: int = 0


@dataclass(slots=True)
class GlobalImportStatus:
    """Snapshot of import activity for one user."""

    is_importing: bool
    current_job: ImportJobView | None
    queued_jobs: list[ImportJobView]
    today_stats: DailyImportStats
    active_feed_count: int
    processed_feeds_today: int


@dataclass(slots=True)
class EnqueueResult:
    """Reference to the job that will import a feed."""

    job_id: str
    feed_id: str
    created: bool


@dataclass(slots=True)
class BulkEnqueueResult:
    """Result of queueing every active feed of a user."""

    queued_count: int
    job_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FeedRegistration:
    """One feed to register in a bulk registration."""

    name: str
    url: str
    active: bool = True


@dataclass(slots=True)
class FeedRegistrationFailure:
    name: str
    url: str
    error: str


@dataclass(slots=True)
class FeedRegistrationResult:
    """Outcome of a bulk registration; failures do not stop the remaining feeds."""

    total: int
    created: list[FeedView] = field(default_factory=list)
    failures: list[FeedRegistrationFailure] = field(default_factory=list)


@dataclass(slots=True)
class StopResult:
    """Result of a stop request."""

    dropped_job_ids: list[str] = field(default_factory=list)
    current_job_id: str | None = None

    @property
    def stopped_count(self) -> int:
        return len(self.dropped_job_ids) + (1 if self.current_job_id is not None else 0)


@dataclass(slots=True)
class ImportProgress:
    """Progress report emitted after each processed batch."""

    job_id: str
    feed_id: str
    batch_number: int
    batch_count: int
    counters: ImportCounters


@dataclass(slots=True)
class ProductPage:
    """Paginated view of a feed's catalog products."""

    page: int
    limit: int
    total: int
    total_pages: int
    items: list[ProductView]
