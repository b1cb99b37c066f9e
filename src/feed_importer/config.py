"""Runtime configuration for the feed import pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ImportSettings:
    """Reconciliation and job-tracking settings."""

    batch_size: int = 50
    row_workers: int = 4
    error_details_cap: int = 20
    job_stale_after_seconds: int = 1_800
    retirement_min_prior: int = 20
    retirement_min_ratio: float = 0.5


@dataclass(slots=True)
class FetchSettings:
    """Feed download settings."""

    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    max_retries: int = 2
    user_agent: str = "feed-importer/1.0"


@dataclass(slots=True)
class CacheSettings:
    """In-process read cache settings."""

    ttl_seconds: int = 60


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".feed_importer.db")
    sqlite_busy_timeout_ms: int = 5_000
    imports: ImportSettings = field(default_factory=ImportSettings)
    fetch: FetchSettings = field(default_factory=FetchSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("FEED_IMPORTER_DB_PATH", ".feed_importer.db")),
            sqlite_busy_timeout_ms=int(os.getenv("FEED_IMPORTER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            imports=ImportSettings(
                batch_size=int(os.getenv("FEED_IMPORTER_BATCH_SIZE", "50")),
                row_workers=int(os.getenv("FEED_IMPORTER_ROW_WORKERS", "4")),
                error_details_cap=int(os.getenv("FEED_IMPORTER_ERROR_DETAILS_CAP", "20")),
                job_stale_after_seconds=int(
                    os.getenv("FEED_IMPORTER_JOB_STALE_AFTER_SECONDS", "1800"),
                ),
                retirement_min_prior=int(os.getenv("FEED_IMPORTER_RETIREMENT_MIN_PRIOR", "20")),
                retirement_min_ratio=float(
                    os.getenv("FEED_IMPORTER_RETIREMENT_MIN_RATIO", "0.5"),
                ),
            ),
            fetch=FetchSettings(
                timeout_seconds=float(os.getenv("FEED_IMPORTER_FETCH_TIMEOUT_SECONDS", "60")),
                connect_timeout_seconds=float(
                    os.getenv("FEED_IMPORTER_FETCH_CONNECT_TIMEOUT_SECONDS", "10"),
                ),
                max_retries=int(os.getenv("FEED_IMPORTER_FETCH_MAX_RETRIES", "2")),
                user_agent=os.getenv("FEED_IMPORTER_USER_AGENT", "feed-importer/1.0"),
            ),
            cache=CacheSettings(
                ttl_seconds=int(os.getenv("FEED_IMPORTER_CACHE_TTL_SECONDS", "60")),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("FEED_IMPORTER_USER_ID", "default_user"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.imports.batch_size <= 0:
            raise ValueError("FEED_IMPORTER_BATCH_SIZE must be a positive integer.")
        if self.imports.row_workers <= 0:
            raise ValueError("FEED_IMPORTER_ROW_WORKERS must be a positive integer.")
        if self.imports.error_details_cap <= 0:
            raise ValueError("FEED_IMPORTER_ERROR_DETAILS_CAP must be a positive integer.")
        if self.imports.job_stale_after_seconds <= 0:
            raise ValueError("FEED_IMPORTER_JOB_STALE_AFTER_SECONDS must be > 0.")
        if self.imports.retirement_min_prior < 0:
            raise ValueError("FEED_IMPORTER_RETIREMENT_MIN_PRIOR must be >= 0.")
        if not 0.0 <= self.imports.retirement_min_ratio <= 1.0:
            raise ValueError("FEED_IMPORTER_RETIREMENT_MIN_RATIO must be between 0 and 1.")
        if self.fetch.timeout_seconds <= 0:
            raise ValueError("FEED_IMPORTER_FETCH_TIMEOUT_SECONDS must be > 0.")
        if self.fetch.connect_timeout_seconds <= 0:
            raise ValueError("FEED_IMPORTER_FETCH_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if self.fetch.max_retries < 0:
            raise ValueError("FEED_IMPORTER_FETCH_MAX_RETRIES must be >= 0.")
        if self.cache.ttl_seconds < 0:
            raise ValueError("FEED_IMPORTER_CACHE_TTL_SECONDS must be >= 0.")
        if not self.user_context.user_id.strip():
            raise ValueError("FEED_IMPORTER_USER_ID must not be empty.")
