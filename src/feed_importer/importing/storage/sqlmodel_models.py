"""SQLModel ORM tables for catalog and import job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class Feed(SQLModel, table=True):
    __tablename__ = "feeds"  # type: ignore[bad-override]

    feed_id: str = Field(primary_key=True)
    owner_id: str = Field(default=DEFAULT_USER_ID, index=True)
    name: str
    url: str = Field(unique=True)
    active: bool = Field(default=True, index=True)
    last_imported_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    import_count: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Product(SQLModel, table=True):
    __tablename__ = "products"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_products_feed_active", "feed_id", "active"),)

    product_id: str = Field(primary_key=True)
    feed_id: str = Field(
        sa_column=Column(
            ForeignKey("feeds.feed_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    url: str = Field(unique=True)
    title: str
    price: float
    old_price: float | None = None
    active: bool = True
    external_id: str | None = None
    aff_code: str | None = None
    campaign_name: str | None = None
    image_urls: str | None = Field(default=None, sa_column=Column(Text))
    category: str | None = None
    subcategory: str | None = None
    brand: str | None = None
    description: str | None = Field(default=None, sa_column=Column(Text))
    last_updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PriceHistory(SQLModel, table=True):
    __tablename__ = "price_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_price_history_product_recorded", "product_id", "recorded_at"),
        Index("idx_price_history_recorded", "recorded_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    product_id: str = Field(
        sa_column=Column(
            ForeignKey("products.product_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    price: float
    previous_price: float | None = None
    feed_id: str = Field(index=True)
    job_id: str = Field(index=True)
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ImportJob(SQLModel, table=True):
    __tablename__ = "import_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_import_jobs_single_processing",
            "status",
            unique=True,
            sqlite_where=text("status = 'processing'"),
        ),
        Index("idx_import_jobs_owner_created", "owner_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    feed_id: str = Field(
        sa_column=Column(
            ForeignKey("feeds.feed_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    feed_name: str
    owner_id: str = Field(default=DEFAULT_USER_ID, index=True)
    status: str = Field(index=True)
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    deactivated: int = 0
    error_count: int = 0
    error_details_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_seconds: float = 0.0
