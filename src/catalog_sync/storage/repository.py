"""SQLModel-backed catalog and run-summary storage."""

from __future__ import annotations

import json
import logging
import struct
from collections.abc import Callable, Iterable
from dataclasses import asdict
from pathlib import Path
from typing import TypeVar

from sqlalchemy import func
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Session, col, delete, select

from catalog_sync.storage.alembic_runner import upgrade_head
from catalog_sync.storage.common import build_sqlite_engine, ensure_utc, utc_now
from catalog_sync.storage.sqlmodel_models import CatalogProductRow, SyncRunErrorRow, SyncRunRow
from catalog_sync.sync.errors import ErrorKind, PersistenceError
from catalog_sync.sync.models import (
    EnrichedItem,
    ItemError,
    ItemStage,
    SyncRunStatus,
    SyncRunSummary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUSY_TIMEOUT_MS = 5000
EXISTING_IDS_CHUNK = 500


class SQLiteCatalogRepository:
    """Persist enriched products and run summaries in one SQLite file.

    Sessions are short-lived and per call, so one instance can be shared by
    all pipeline workers.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Applying migrations to %s", self.db_path)
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> None:
        def _select_one(session: Session) -> None:
            session.exec(select(func.count()).select_from(SyncRunRow)).one()

        self._run("ping", _select_one)

    def upsert(self, store_id: str, item: EnrichedItem) -> None:
        def _write(session: Session) -> None:
            row = session.get(CatalogProductRow, (store_id, item.item_id))
            if row is None:
                row = CatalogProductRow(
                    store_id=store_id,
                    source_id=item.item_id,
                    title=item.draft.title,
                    updated_at=utc_now(),
                )
            _fill_product_row(row, item)
            session.add(row)
            session.commit()

        self._run("upsert", _write)

    def existing_ids(self, store_id: str, source_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(source_ids))

        def _read(session: Session) -> set[str]:
            found: set[str] = set()
            for start in range(0, len(ids), EXISTING_IDS_CHUNK):
                chunk = ids[start : start + EXISTING_IDS_CHUNK]
                found.update(
                    session.exec(
                        select(CatalogProductRow.source_id).where(
                            CatalogProductRow.store_id == store_id,
                            col(CatalogProductRow.source_id).in_(chunk),
                        ),
                    ).all(),
                )
            return found

        return self._run("existing_ids", _read)

    def get_product(self, store_id: str, source_id: str) -> CatalogProductRow | None:
        def _read(session: Session) -> CatalogProductRow | None:
            return session.get(CatalogProductRow, (store_id, source_id))

        return self._run("get_product", _read)

    def count_products(self, store_id: str) -> int:
        def _count(session: Session) -> int:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(CatalogProductRow)
                    .where(CatalogProductRow.store_id == store_id),
                ).one(),
            )

        return self._run("count_products", _count)

    def save_run_summary(self, summary: SyncRunSummary) -> None:
        def _write(session: Session) -> None:
            row = session.get(SyncRunRow, summary.run_id) or SyncRunRow(
                run_id=summary.run_id,
                store_id=summary.store_id,
                status=summary.status.value,
                started_at=summary.started_at,
            )
            row.status = summary.status.value
            row.started_at = summary.started_at
            row.ended_at = summary.ended_at
            row.total = summary.total
            row.processed_count = summary.processed_count
            row.error_count = summary.error_count
            row.cancelled_count = summary.cancelled_count
            row.skipped_count = summary.skipped_count
            row.cost_usd = summary.cost_usd
            row.cost_by_provider_json = json.dumps(summary.cost_by_provider, sort_keys=True)
            row.error = summary.error
            session.add(row)
            session.exec(
                delete(SyncRunErrorRow).where(
                    col(SyncRunErrorRow.run_id) == summary.run_id,
                ),
            )
            for position, error in enumerate(summary.errors):
                session.add(
                    SyncRunErrorRow(
                        run_id=summary.run_id,
                        position=position,
                        item_id=error.item_id,
                        stage=error.stage.value,
                        message=error.message,
                    ),
                )
            session.commit()

        self._run("save_run_summary", _write)

    def list_run_summaries(self, store_id: str, *, limit: int = 20) -> list[SyncRunSummary]:
        def _read(session: Session) -> list[SyncRunSummary]:
            rows = session.exec(
                select(SyncRunRow)
                .where(SyncRunRow.store_id == store_id)
                .order_by(col(SyncRunRow.started_at).desc())
                .limit(limit),
            ).all()
            return [_summary_from_row(row, self._load_errors(session, row.run_id)) for row in rows]

        return self._run("list_run_summaries", _read)

    def get_run_summary(self, run_id: str) -> SyncRunSummary | None:
        def _read(session: Session) -> SyncRunSummary | None:
            row = session.get(SyncRunRow, run_id)
            if row is None:
                return None
            return _summary_from_row(row, self._load_errors(session, run_id))

        return self._run("get_run_summary", _read)

    def _load_errors(self, session: Session, run_id: str) -> list[ItemError]:
        rows = session.exec(
            select(SyncRunErrorRow)
            .where(SyncRunErrorRow.run_id == run_id)
            .order_by(col(SyncRunErrorRow.position)),
        ).all()
        return [
            ItemError(item_id=row.item_id, stage=ItemStage(row.stage), message=row.message)
            for row in rows
        ]

    def _run(self, operation: str, body: Callable[[Session], T]) -> T:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return body(session)
        except OperationalError as error:
            raise PersistenceError(
                message=f"SQLite {operation} failed: {error.orig}",
                code="sqlite_operational_error",
                kind=ErrorKind.UNREACHABLE,
            ) from error
        except SQLAlchemyError as error:
            raise PersistenceError(
                message=f"SQLite {operation} failed: {error}",
                code="sqlite_error",
                kind=ErrorKind.INVALID,
            ) from error


def _fill_product_row(row: CatalogProductRow, item: EnrichedItem) -> None:
    """Copy ``item`` onto ``row``; stages skipped this run keep the values stored earlier."""

    draft = item.draft
    row.title = draft.title
    if draft.description or row.description_source != "generated":
        row.description = draft.description
        row.description_source = item.description_source
    row.handle = draft.handle
    row.vendor = draft.vendor
    row.product_type = draft.product_type
    row.sku = draft.sku
    row.currency = draft.currency
    if item.ran_stage(ItemStage.CLASSIFY):
        row.category = item.category
        row.categories_json = json.dumps(item.categories)
        row.demographics_json = json.dumps(item.demographics)
        row.characteristics_json = json.dumps(item.characteristics, sort_keys=True)
    row.tags_json = json.dumps(draft.tags)
    row.collections_json = json.dumps(draft.collections)
    row.image_urls_json = json.dumps(item.image_urls)
    row.variants_json = json.dumps([asdict(variant) for variant in draft.variants])
    row.provenance_json = json.dumps(_merged_provenance(row.provenance_json, item))
    if item.embedding is not None:
        row.embedding_blob = _pack_vector(item.embedding)
        row.embedding_dim = len(item.embedding)
    if item.characteristics_embedding is not None:
        row.characteristics_embedding_blob = _pack_vector(item.characteristics_embedding)
        row.characteristics_embedding_dim = len(item.characteristics_embedding)
    row.updated_at = utc_now()


def _merged_provenance(stored_json: str | None, item: EnrichedItem) -> list[dict]:
    current = [
        {
            "stage": entry.stage.value,
            "provider": entry.provider,
            "model": entry.model,
            "input_tokens": entry.input_tokens,
            "cached_input_tokens": entry.cached_input_tokens,
            "output_tokens": entry.output_tokens,
            "sources": [{"title": source.title, "url": source.url} for source in entry.sources],
        }
        for entry in item.provenance
    ]
    stages = {entry["stage"] for entry in current}
    kept = [entry for entry in json.loads(stored_json or "[]") if entry.get("stage") not in stages]
    return current + kept


def _summary_from_row(row: SyncRunRow, errors: list[ItemError]) -> SyncRunSummary:
    return SyncRunSummary(
        run_id=row.run_id,
        store_id=row.store_id,
        status=SyncRunStatus(row.status),
        started_at=ensure_utc(row.started_at),
        ended_at=ensure_utc(row.ended_at) if row.ended_at is not None else None,
        total=row.total,
        processed_count=row.processed_count,
        error_count=row.error_count,
        cancelled_count=row.cancelled_count,
        skipped_count=row.skipped_count,
        cost_usd=row.cost_usd,
        cost_by_provider=json.loads(row.cost_by_provider_json or "{}"),
        errors=errors,
        error=row.error,
    )


def _pack_vector(vector: list[float]) -> bytes:
    return struct.pack(f"{len(vector)}f", *vector)


def unpack_vector(blob: bytes, dim: int) -> list[float]:
    return list(struct.unpack(f"{dim}f", blob))
