"""SQLModel ORM tables for catalog sync storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlmodel import Field, SQLModel


class SyncRunRow(SQLModel, table=True):
    __tablename__ = "sync_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_sync_runs_store_started", "store_id", "started_at"),)

    run_id: str = Field(primary_key=True)
    store_id: str = Field(index=True)
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total: int = 0
    processed_count: int = 0
    error_count: int = 0
    cancelled_count: int = 0
    skipped_count: int = 0
    cost_usd: float = 0.0
    cost_by_provider_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class SyncRunErrorRow(SQLModel, table=True):
    __tablename__ = "sync_run_errors"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("sync_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    item_id: str
    stage: str
    message: str = Field(sa_column=Column(Text, nullable=False))


class CatalogProductRow(SQLModel, table=True):
    __tablename__ = "catalog_products"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("store_id", "source_id", name="pk_catalog_products"),
        Index("ix_catalog_products_store_category", "store_id", "category"),
    )

    store_id: str
    source_id: str
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    description_source: str = "original"
    handle: str = ""
    vendor: str = ""
    product_type: str = ""
    sku: str = ""
    currency: str = "USD"
    category: str | None = None
    categories_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    demographics_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    characteristics_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    collections_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    image_urls_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    variants_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    provenance_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    embedding_blob: bytes | None = Field(
        default=None,
        sa_column=Column(LargeBinary, nullable=True),
    )
    embedding_dim: int | None = None
    characteristics_embedding_blob: bytes | None = Field(
        default=None,
        sa_column=Column(LargeBinary, nullable=True),
    )
    characteristics_embedding_dim: int | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
