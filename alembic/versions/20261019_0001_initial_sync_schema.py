"""Initial catalog sync schema: runs, run errors, catalog products."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancelled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("cost_by_provider_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_sync_runs_store_id", "sync_runs", ["store_id"])
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])
    op.create_index("ix_sync_runs_store_started", "sync_runs", ["store_id", "started_at"])

    op.create_table(
        "sync_run_errors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["sync_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_run_errors_run_id", "sync_run_errors", ["run_id"])

    op.create_table(
        "catalog_products",
        sa.Column("store_id", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("description_source", sa.String(), nullable=False, server_default="original"),
        sa.Column("handle", sa.String(), nullable=False, server_default=""),
        sa.Column("vendor", sa.String(), nullable=False, server_default=""),
        sa.Column("product_type", sa.String(), nullable=False, server_default=""),
        sa.Column("sku", sa.String(), nullable=False, server_default=""),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("categories_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("demographics_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("characteristics_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("collections_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("image_urls_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("variants_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("provenance_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("embedding_blob", sa.LargeBinary(), nullable=True),
        sa.Column("embedding_dim", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("store_id", "source_id", name="pk_catalog_products"),
    )
    op.create_index(
        "ix_catalog_products_store_category",
        "catalog_products",
        ["store_id", "category"],
    )


def downgrade() -> None:
    op.drop_index("ix_catalog_products_store_category", table_name="catalog_products")
    op.drop_table("catalog_products")
    op.drop_index("ix_sync_run_errors_run_id", table_name="sync_run_errors")
    op.drop_table("sync_run_errors")
    op.drop_index("ix_sync_runs_store_started", table_name="sync_runs")
    op.drop_index("ix_sync_runs_status", table_name="sync_runs")
    op.drop_index("ix_sync_runs_store_id", table_name="sync_runs")
    op.drop_table("sync_runs")
