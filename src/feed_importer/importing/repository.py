"""SQLModel-backed storage facade for feeds, catalog, price history, and import jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select, update

from feed_importer.importing.errors import ConflictError, InvalidStateError
from feed_importer.importing.merge import build_product, merge_product
from feed_importer.importing.models import (
    ErrorDetail,
    FeedView,
    ImportJobView,
    JobStatus,
    PriceHistoryView,
    ProductFields,
    ProductView,
    UpsertAction,
    UpsertResult,
)
from feed_importer.importing.storage.alembic_runner import upgrade_head
from feed_importer.importing.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from feed_importer.importing.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    Feed,
    ImportJob,
    PriceHistory,
    Product,
)

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; chunk large IN() lists.
_IN_CLAUSE_CHUNK = 500
_ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
_JOB_FIELDS = frozenset(
    {
        "status",
        "total_processed",
        "inserted",
        "updated",
        "deactivated",
        "error_count",
        "error_details",
        "error_summary",
        "started_at",
        "heartbeat_at",
        "ended_at",
        "duration_seconds",
    },
)


class CatalogRepository:
    """Facade that persists catalog and import entities using SQLModel and Alembic."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

        # Keep low-level connection for tests and ad-hoc debugging queries.
        self._connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def close(self) -> None:
        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # -- feeds ----------------------------------------------------------------

    def create_feed(
        self,
        *,
        name: str,
        url: str,
        owner_id: str = DEFAULT_USER_ID,
        active: bool = True,
    ) -> FeedView:
        now = utc_now()
        row = Feed(
            feed_id=str(uuid4()),
            owner_id=owner_id,
            name=name.strip(),
            url=url.strip(),
            active=active,
            last_imported_at=None,
            import_count=0,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(message=f"Feed with this URL already exists: {url}") from error
            session.refresh(row)
            return _feed_view(row)

    def get_feed(self, feed_id: str) -> FeedView | None:
        with Session(self.engine) as session:
            row = session.get(Feed, feed_id)
            return _feed_view(row) if row is not None else None

    def list_feeds(self, *, owner_id: str, active_only: bool = False) -> list[FeedView]:
        with Session(self.engine) as session:
            statement = select(Feed).where(Feed.owner_id == owner_id)
            if active_only:
                statement = statement.where(col(Feed.active).is_(True))
            statement = statement.order_by(col(Feed.created_at).desc(), col(Feed.name))
            return [_feed_view(row) for row in session.exec(statement).all()]

    def count_active_feeds(self, *, owner_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Feed)
                .where(Feed.owner_id == owner_id, col(Feed.active).is_(True)),
            ).one()

    def set_feed_active(self, feed_id: str, *, active: bool) -> FeedView | None:
        with Session(self.engine) as session:
            row = session.get(Feed, feed_id)
            if row is None:
                return None
            row.active = active
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _feed_view(row)

    def record_feed_import(self, feed_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(Feed, feed_id)
            if row is None:
                raise RuntimeError(f"Feed not found: {feed_id}")
            now = utc_now()
            row.last_imported_at = now
            row.import_count += 1
            row.updated_at = now
            session.add(row)
            session.commit()

    # -- products -------------------------------------------------------------

    def snapshot_active_product_urls(self, feed_id: str) -> dict[str, str]:
        """Map url -> product_id for products currently active under a feed."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Product.url, Product.product_id).where(
                    Product.feed_id == feed_id,
                    col(Product.active).is_(True),
                ),
            ).all()
        return {url: product_id for url, product_id in rows}

    def upsert_product(self, *, feed_id: str, fields: ProductFields) -> UpsertResult:
        """Insert a product for an unseen url or merge feed values into the existing one."""

        for _ in range(2):
            with Session(self.engine) as session:
                existing = session.exec(
                    select(Product).where(Product.url == fields.url),
                ).one_or_none()
                now = utc_now()
                if existing is not None:
                    previous_price = existing.price
                    merge_product(existing, fields, now=now)
                    session.add(existing)
                    session.commit()
                    return UpsertResult(
                        product_id=existing.product_id,
                        action=UpsertAction.UPDATED,
                        price=fields.price,
                        previous_price=previous_price,
                    )

                product_id = str(uuid4())
                session.add(
                    build_product(product_id=product_id, feed_id=feed_id, fields=fields, now=now),
                )
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer created the url first; retry as an update.
                    session.rollback()
                    continue
                return UpsertResult(
                    product_id=product_id,
                    action=UpsertAction.INSERTED,
                    price=fields.price,
                    previous_price=None,
                )
        raise RuntimeError(f"Could not upsert product for url: {fields.url}")

    def deactivate_products(self, *, feed_id: str, urls: Iterable[str]) -> int:
        """Mark still-active products of a feed inactive; returns rows changed."""

        url_list = sorted(set(urls))
        if not url_list:
            return 0

        changed = 0
        with Session(self.engine) as session:
            now = utc_now()
            for chunk in _chunks(url_list, _IN_CLAUSE_CHUNK):
                product_ids = session.exec(
                    select(Product.product_id).where(
                        Product.feed_id == feed_id,
                        col(Product.active).is_(True),
                        col(Product.url).in_(chunk),
                    ),
                ).all()
                if not product_ids:
                    continue
                session.exec(
                    update(Product)
                    .where(col(Product.product_id).in_(list(product_ids)))
                    .values(active=False, last_updated_at=now),
                )
                changed += len(product_ids)
            session.commit()
        return changed

    def get_product(self, product_id: str) -> ProductView | None:
        with Session(self.engine) as session:
            row = session.get(Product, product_id)
            return _product_view(row) if row is not None else None

    def get_product_by_url(self, url: str) -> ProductView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Product).where(Product.url == url)).one_or_none()
            return _product_view(row) if row is not None else None

    def list_products(
        self,
        *,
        feed_id: str,
        active: bool | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[int, list[ProductView]]:
        with Session(self.engine) as session:
            conditions: list[Any] = [Product.feed_id == feed_id]
            if active is not None:
                conditions.append(col(Product.active).is_(active))
            total = session.exec(
                select(func.count()).select_from(Product).where(*conditions),
            ).one()
            rows = session.exec(
                select(Product)
                .where(*conditions)
                .order_by(col(Product.created_at).desc(), col(Product.url))
                .offset(max(0, offset))
                .limit(max(1, limit)),
            ).all()
        return total, [_product_view(row) for row in rows]

    # -- price history --------------------------------------------------------

    def add_price_history(
        self,
        *,
        product_id: str,
        price: float,
        previous_price: float | None,
        feed_id: str,
        job_id: str,
    ) -> int:
        with Session(self.engine) as session:
            row = PriceHistory(
                product_id=product_id,
                price=price,
                previous_price=previous_price,
                feed_id=feed_id,
                job_id=job_id,
                recorded_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Price history row was not assigned an id")
            return row.id

    def list_price_history(
        self,
        product_id: str,
        *,
        since: datetime | None = None,
    ) -> list[PriceHistoryView]:
        with Session(self.engine) as session:
            statement = select(PriceHistory).where(PriceHistory.product_id == product_id)
            if since is not None:
                statement = statement.where(PriceHistory.recorded_at >= to_db_datetime(since))
            statement = statement.order_by(col(PriceHistory.recorded_at), col(PriceHistory.id))
            rows = session.exec(statement).all()
        return [
            PriceHistoryView(
                entry_id=row.id or 0,
                product_id=row.product_id,
                price=row.price,
                previous_price=row.previous_price,
                feed_id=row.feed_id,
                job_id=row.job_id,
                recorded_at=to_utc_aware_datetime(row.recorded_at),
            )
            for row in rows
        ]

    # -- import jobs ----------------------------------------------------------

    def create_job(self, *, feed_id: str, feed_name: str, owner_id: str) -> ImportJobView:
        row = ImportJob(
            job_id=str(uuid4()),
            feed_id=feed_id,
            feed_name=feed_name,
            owner_id=owner_id,
            status=JobStatus.PENDING.value,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _job_view(row)

    def get_job(self, job_id: str) -> ImportJobView | None:
        with Session(self.engine) as session:
            row = session.get(ImportJob, job_id)
            return _job_view(row) if row is not None else None

    def update_job(self, job_id: str, changes: dict[str, Any]) -> ImportJobView:
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown import job fields: {sorted(unknown)}")

        with Session(self.engine) as session:
            row = session.get(ImportJob, job_id)
            if row is None:
                raise RuntimeError(f"Import job not found: {job_id}")

            for name, value in changes.items():
                if name == "status":
                    row.status = JobStatus(value).value
                elif name == "error_details":
                    row.error_details_json = json.dumps(
                        [detail.to_dict() for detail in value],
                        ensure_ascii=False,
                    )
                else:
                    setattr(row, name, value)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                active = session.exec(
                    select(ImportJob).where(ImportJob.status == JobStatus.PROCESSING.value),
                ).one_or_none()
                if active is None:
                    raise
                raise InvalidStateError(
                    message=(
                        "Another import job is already processing "
                        f"(job_id={active.job_id}, feed={active.feed_name})."
                    ),
                ) from error
            session.refresh(row)
            return _job_view(row)

    def list_jobs(
        self,
        *,
        owner_id: str,
        feed_id: str | None = None,
        status: JobStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[int, list[ImportJobView]]:
        conditions: list[Any] = [ImportJob.owner_id == owner_id]
        if feed_id is not None:
            conditions.append(ImportJob.feed_id == feed_id)
        if status is not None:
            conditions.append(ImportJob.status == status.value)

        with Session(self.engine) as session:
            total = session.exec(
                select(func.count()).select_from(ImportJob).where(*conditions),
            ).one()
            rows = session.exec(
                select(ImportJob)
                .where(*conditions)
                .order_by(col(ImportJob.created_at).desc(), col(ImportJob.job_id).desc())
                .offset(max(0, offset))
                .limit(max(1, limit)),
            ).all()
        return total, [_job_view(row) for row in rows]

    def list_active_jobs(self, *, owner_id: str) -> list[ImportJobView]:
        """Pending and processing jobs, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ImportJob)
                .where(
                    ImportJob.owner_id == owner_id,
                    col(ImportJob.status).in_(_ACTIVE_JOB_STATUSES),
                )
                .order_by(col(ImportJob.created_at), col(ImportJob.job_id)),
            ).all()
        return [_job_view(row) for row in rows]

    def list_completed_jobs_since(self, *, owner_id: str, since: datetime) -> list[ImportJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ImportJob).where(
                    ImportJob.owner_id == owner_id,
                    ImportJob.status == JobStatus.COMPLETED.value,
                    col(ImportJob.ended_at) >= to_db_datetime(since),
                ),
            ).all()
        return [_job_view(row) for row in rows]

    def last_completed_job(self, feed_id: str) -> ImportJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ImportJob)
                .where(
                    ImportJob.feed_id == feed_id,
                    ImportJob.status == JobStatus.COMPLETED.value,
                )
                .order_by(col(ImportJob.ended_at).desc(), col(ImportJob.created_at).desc())
                .limit(1),
            ).first()
            return _job_view(row) if row is not None else None

    def list_stale_job_ids(self, *, stale_after: timedelta) -> list[str]:
        """Pending/processing jobs whose last sign of life is older than ``stale_after``."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ImportJob.job_id).where(
                    col(ImportJob.status).in_(_ACTIVE_JOB_STATUSES),
                    func.coalesce(ImportJob.heartbeat_at, ImportJob.created_at) < cutoff,
                ),
            ).all()
        return list(rows)


def _chunks(values: Sequence[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _feed_view(row: Feed) -> FeedView:
    return FeedView(
        feed_id=row.feed_id,
        name=row.name,
        url=row.url,
        owner_id=row.owner_id,
        active=bool(row.active),
        last_imported_at=optional_utc(row.last_imported_at),
        import_count=row.import_count,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _product_view(row: Product) -> ProductView:
    return ProductView(
        product_id=row.product_id,
        feed_id=row.feed_id,
        url=row.url,
        title=row.title,
        price=row.price,
        old_price=row.old_price,
        active=bool(row.active),
        external_id=row.external_id,
        aff_code=row.aff_code,
        campaign_name=row.campaign_name,
        image_urls=row.image_urls,
        category=row.category,
        subcategory=row.subcategory,
        brand=row.brand,
        description=row.description,
        last_updated_at=to_utc_aware_datetime(row.last_updated_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _job_view(row: ImportJob) -> ImportJobView:
    try:
        payload = json.loads(row.error_details_json or "[]")
    except json.JSONDecodeError:
        logger.warning("Unreadable error details for import job %s", row.job_id)
        payload = []
    return ImportJobView(
        job_id=row.job_id,
        feed_id=row.feed_id,
        feed_name=row.feed_name,
        owner_id=row.owner_id,
        status=JobStatus(row.status),
        total_processed=row.total_processed,
        inserted=row.inserted,
        updated=row.updated,
        deactivated=row.deactivated,
        error_count=row.error_count,
        error_details=[ErrorDetail.from_dict(item) for item in payload if isinstance(item, dict)],
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        ended_at=optional_utc(row.ended_at),
        duration_seconds=row.duration_seconds,
    )
