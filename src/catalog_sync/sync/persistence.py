"""Persistence-side contracts consumed by the sync pipeline."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from catalog_sync.sync.models import EnrichedItem, SyncRunSummary


class CatalogStore(Protocol):
    """Destination for enriched products."""

    def ping(self) -> None:
        """Raise if the store cannot be reached."""
        raise NotImplementedError

    def upsert(self, store_id: str, item: EnrichedItem) -> None:
        """Insert or replace one product."""
        raise NotImplementedError

    def existing_ids(self, store_id: str, source_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``source_ids`` already stored for ``store_id``."""
        raise NotImplementedError


class BlobStore(Protocol):
    """Hosted copies of product images."""

    def upload_image(self, url: str, key: str) -> str:
        """Copy the image at ``url`` under ``key`` and return the hosted URL."""
        raise NotImplementedError


class RunSummaryStore(Protocol):
    """Durable record of finished runs."""

    def save_run_summary(self, summary: SyncRunSummary) -> None:
        raise NotImplementedError

    def list_run_summaries(self, store_id: str, *, limit: int = 20) -> list[SyncRunSummary]:
        raise NotImplementedError

    def get_run_summary(self, run_id: str) -> SyncRunSummary | None:
        raise NotImplementedError
