"""Initial catalog schema: feeds, products, price history, import jobs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "feeds",
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False, server_default="default_user"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("feed_id"),
        sa.UniqueConstraint("url", name="uq_feeds_url"),
    )
    op.create_index("ix_feeds_owner_id", "feeds", ["owner_id"])
    op.create_index("ix_feeds_active", "feeds", ["active"])

    op.create_table(
        "products",
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("old_price", sa.Float(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("aff_code", sa.String(), nullable=True),
        sa.Column("campaign_name", sa.String(), nullable=True),
        sa.Column("image_urls", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("subcategory", sa.String(), nullable=True),
        sa.Column("brand", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["feed_id"], ["feeds.feed_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("product_id"),
        sa.UniqueConstraint("url", name="uq_products_url"),
    )
    op.create_index("ix_products_feed_id", "products", ["feed_id"])
    op.create_index("idx_products_feed_active", "products", ["feed_id", "active"])

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("previous_price", sa.Float(), nullable=True),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.product_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_price_history_product_recorded",
        "price_history",
        ["product_id", "recorded_at"],
    )
    op.create_index("idx_price_history_recorded", "price_history", ["recorded_at"])
    op.create_index("ix_price_history_feed_id", "price_history", ["feed_id"])
    op.create_index("ix_price_history_job_id", "price_history", ["job_id"])

    op.create_table(
        "import_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("feed_name", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False, server_default="default_user"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("inserted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deactivated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_details_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["feed_id"], ["feeds.feed_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_import_jobs_feed_id", "import_jobs", ["feed_id"])
    op.create_index("ix_import_jobs_owner_id", "import_jobs", ["owner_id"])
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])
    op.create_index("idx_import_jobs_owner_created", "import_jobs", ["owner_id", "created_at"])
    # Single-flight: at most one job may be processing at any time.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_import_jobs_single_processing
            ON import_jobs (status)
            WHERE status = 'processing'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_import_jobs_single_processing"))
    op.drop_table("import_jobs")
    op.drop_table("price_history")
    op.drop_table("products")
    op.drop_table("feeds")
