"""Sync pipeline orchestration: list, enrich and persist one store catalog."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import PurePosixPath
from typing import Protocol, TypeVar
from urllib.parse import urlparse
from uuid import uuid4

from catalog_sync.storage.common import utc_now
from catalog_sync.sync.adapters.base import PlatformAdapter
from catalog_sync.sync.ai.base import AiProvider
from catalog_sync.sync.ai.categories import DEFAULT_CATEGORIES
from catalog_sync.sync.broadcast import ProgressBroadcaster, RunBroadcaster
from catalog_sync.sync.errors import (
    AdapterUnreachable,
    InvalidConfiguration,
    ItemFault,
    PersistenceUnavailable,
    RunFault,
    is_transient,
)
from catalog_sync.sync.models import (
    EnrichedItem,
    GenerationProvenance,
    ItemError,
    ItemStage,
    SourceItem,
    SyncOptions,
    SyncProgress,
    SyncRunStatus,
    SyncRunSummary,
    SyncStatusView,
    TokenUsage,
)
from catalog_sync.sync.persistence import BlobStore, CatalogStore, RunSummaryStore
from catalog_sync.sync.pool import CancellationToken, run_batched
from catalog_sync.sync.pricing import CostAccountant, CostLedger, PricingTable
from catalog_sync.sync.ratelimit import RequestRateLimiter
from catalog_sync.sync.retry import (
    LoggingRetryObserver,
    RetryPolicy,
    run_with_retry,
    with_rate_limit_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMBEDDING_MAX_CHARS = 8000

_ALLOWED_TRANSITIONS: dict[SyncRunStatus, frozenset[SyncRunStatus]] = {
    SyncRunStatus.PENDING: frozenset({SyncRunStatus.QUEUED, SyncRunStatus.FAILED}),
    SyncRunStatus.QUEUED: frozenset(
        {SyncRunStatus.RUNNING, SyncRunStatus.FAILED, SyncRunStatus.CANCELLED},
    ),
    SyncRunStatus.RUNNING: frozenset(
        {SyncRunStatus.COMPLETED, SyncRunStatus.FAILED, SyncRunStatus.CANCELLED},
    ),
}


class ProgressObserver(Protocol):
    """In-process progress hook, called after every item."""

    def on_progress(self, run_id: str, progress: SyncProgress) -> None:
        raise NotImplementedError


class SyncRunState:
    """Mutable run record owned by one pipeline execution.

    Every mutation goes through the run lock; once a terminal status is set the
    record no longer changes.
    """

    def __init__(self, *, run_id: str, store_id: str, ledger: CostLedger) -> None:
        self.run_id = run_id
        self.store_id = store_id
        self.ledger = ledger
        self.status = SyncRunStatus.PENDING
        self.started_at = utc_now()
        self.ended_at: datetime | None = None
        self.total = 0
        self.processed = 0
        self.error_count = 0
        self.cancelled_count = 0
        self.skipped_count = 0
        self.errors: list[ItemError] = []
        self.error: str | None = None
        self._lock = threading.Lock()

    def transition(self, status: SyncRunStatus, *, error: str | None = None) -> None:
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
            if status not in allowed:
                raise RuntimeError(
                    f"Run {self.run_id} cannot move from {self.status.value} to {status.value}",
                )
            self.status = status
            if error is not None:
                self.error = error
            if status.is_terminal:
                self.ended_at = utc_now()

    def set_population(self, *, total: int, skipped: int) -> None:
        with self._lock:
            self.total = total
            self.skipped_count = skipped

    def record_item(self, error: ItemError | None) -> SyncProgress:
        with self._lock:
            self.processed += 1
            if error is not None:
                self.error_count += 1
                self.errors.append(error)
            return SyncProgress(processed=self.processed, total=self.total)

    def record_cancelled(self, count: int) -> None:
        with self._lock:
            self.cancelled_count += count

    def snapshot(self) -> SyncStatusView:
        with self._lock:
            return SyncStatusView(
                run_id=self.run_id,
                store_id=self.store_id,
                status=self.status,
                processed=self.processed,
                total=self.total,
                error_count=self.error_count,
                cost_usd=self.ledger.total_usd,
                error=self.error,
            )

    def to_summary(self) -> SyncRunSummary:
        with self._lock:
            return SyncRunSummary(
                run_id=self.run_id,
                store_id=self.store_id,
                status=self.status,
                started_at=self.started_at,
                ended_at=self.ended_at,
                total=self.total,
                processed_count=self.processed,
                error_count=self.error_count,
                cancelled_count=self.cancelled_count,
                skipped_count=self.skipped_count,
                cost_usd=self.ledger.total_usd,
                cost_by_provider=self.ledger.by_provider(),
                errors=list(self.errors),
                error=self.error,
            )


@dataclass(slots=True)
class _RunContext:
    state: SyncRunState
    options: SyncOptions
    broadcast: RunBroadcaster
    ai_policy: RetryPolicy
    io_policy: RetryPolicy


class SyncPipeline:
    """Drives one sync run end to end.

    Setup failures (bad options, unreachable store or adapter) end the run as
    ``failed``. Per-item failures are recorded on the run and never raised.
    """

    def __init__(
        self,
        *,
        adapter: PlatformAdapter,
        provider: AiProvider,
        catalog_store: CatalogStore,
        pricing_table: PricingTable,
        blob_store: BlobStore | None = None,
        summary_store: RunSummaryStore | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        progress_observer: ProgressObserver | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        categories: Sequence[str] = DEFAULT_CATEGORIES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.adapter = adapter
        self.provider = provider
        self.catalog_store = catalog_store
        self.blob_store = blob_store
        self.summary_store = summary_store
        self.broadcaster = broadcaster
        self.progress_observer = progress_observer
        self.accountant = CostAccountant(pricing_table)
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.categories = list(categories)
        self._sleep = sleep

    def new_run(self, store_id: str, *, run_id: str | None = None) -> SyncRunState:
        return SyncRunState(
            run_id=run_id or str(uuid4()),
            store_id=store_id,
            ledger=CostLedger(self.accountant),
        )

    def run(
        self,
        store_id: str,
        options: SyncOptions | None = None,
        *,
        state: SyncRunState | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SyncRunSummary:
        """Execute a run and return its terminal summary."""

        options = options or SyncOptions()
        state = state or self.new_run(store_id)
        if state.status is SyncRunStatus.PENDING:
            state.transition(SyncRunStatus.QUEUED)
        broadcast = RunBroadcaster(self.broadcaster, store_id, state.run_id)
        io_policy = self._io_policy()
        context = _RunContext(
            state=state,
            options=options,
            broadcast=broadcast,
            ai_policy=with_rate_limit_retry(io_policy),
            io_policy=io_policy,
        )

        try:
            self._validate_options(options)
            if cancel_token is None:
                cancel_token = CancellationToken(deadline_seconds=options.deadline_seconds)
            items = self._prepare_items(context)
        except RunFault as fault:
            logger.error("Sync run %s for store %s failed: %s", state.run_id, store_id, fault)
            return self._finish(context, SyncRunStatus.FAILED, error=str(fault))
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected setup error in sync run %s", state.run_id)
            return self._finish(context, SyncRunStatus.FAILED, error=str(error))

        state.transition(SyncRunStatus.RUNNING)
        broadcast.status(SyncRunStatus.RUNNING.value, total=state.total)
        logger.info(
            "Sync run %s for store %s started: %d items (%d skipped)",
            state.run_id,
            store_id,
            state.total,
            state.skipped_count,
        )

        entries = run_batched(
            items,
            lambda item, _index: self._process_item(context, item),
            batch_size=options.batch_size,
            concurrency=options.concurrency,
            cancel_token=cancel_token,
        )
        cancelled = sum(1 for entry in entries if entry.cancelled)
        state.record_cancelled(cancelled)

        if cancelled:
            reason = "deadline expired" if cancel_token.deadline_expired else "cancel requested"
            logger.warning(
                "Sync run %s stopped early (%s): %d items not started",
                state.run_id,
                reason,
                cancelled,
            )
            return self._finish(context, SyncRunStatus.CANCELLED)
        return self._finish(context, SyncRunStatus.COMPLETED)

    def _validate_options(self, options: SyncOptions) -> None:
        if options.concurrency < 1:
            raise InvalidConfiguration(message="concurrency must be >= 1")
        if options.batch_size < 1:
            raise InvalidConfiguration(message="batch_size must be >= 1")
        if options.deadline_seconds is not None and options.deadline_seconds <= 0:
            raise InvalidConfiguration(message="deadline_seconds must be > 0")
        if options.upload_images and self.blob_store is None:
            raise InvalidConfiguration(message="upload_images requires a blob store")

    def _prepare_items(self, context: _RunContext) -> list[SourceItem]:
        state = context.state
        try:
            run_with_retry(self.catalog_store.ping, context.io_policy, sleep=self._sleep)
        except Exception as error:
            raise PersistenceUnavailable(message=f"Catalog store unreachable: {error}") from error

        try:
            items = run_with_retry(
                lambda: list(self.adapter.list_items()),
                context.io_policy,
                observer=LoggingRetryObserver(f"{self.adapter.name} listing"),
                sleep=self._sleep,
            )
        except Exception as error:
            raise AdapterUnreachable(
                message=f"Adapter {self.adapter.name} could not list items: {error}",
            ) from error

        skipped = 0
        if context.options.only_new and items:
            source_ids = [item.source_id for item in items]
            try:
                existing = run_with_retry(
                    lambda: self.catalog_store.existing_ids(state.store_id, source_ids),
                    context.io_policy,
                    sleep=self._sleep,
                )
            except Exception as error:
                raise PersistenceUnavailable(
                    message=f"Could not read existing products: {error}",
                ) from error
            fresh = [item for item in items if item.source_id not in existing]
            skipped = len(items) - len(fresh)
            items = fresh

        state.set_population(total=len(items), skipped=skipped)
        return items

    def _process_item(self, context: _RunContext, item: SourceItem) -> EnrichedItem:
        stage = ItemStage.TRANSFORM
        try:
            draft = self.adapter.transform(item)
            enriched = EnrichedItem(source=item, draft=draft, image_urls=list(draft.image_urls))

            options = context.options
            if options.generate_descriptions and not draft.description.strip():
                stage = ItemStage.DESCRIBE
                self._describe(context, enriched)
            if options.classify_products:
                stage = ItemStage.CLASSIFY
                self._classify(context, enriched)
            if options.generate_embeddings:
                stage = ItemStage.EMBED
                self._embed(context, enriched)
            if options.upload_images and enriched.image_urls:
                stage = ItemStage.UPLOAD
                self._upload_images(context, enriched)

            stage = ItemStage.PERSIST
            run_with_retry(
                lambda: self.catalog_store.upsert(context.state.store_id, enriched),
                context.io_policy,
                observer=LoggingRetryObserver(f"persist of {item.source_id}"),
                sleep=self._sleep,
            )
        except Exception as error:
            item_error = ItemError(item_id=item.source_id, stage=stage, message=str(error))
            logger.warning(
                "Item %s failed at %s: %s",
                item.source_id,
                stage.value,
                error,
            )
            self._after_item(context, item_error)
            raise ItemFault(
                message=item_error.message,
                item_id=item.source_id,
                stage=stage,
            ) from error

        self._after_item(context, None)
        return enriched

    def _describe(self, context: _RunContext, enriched: EnrichedItem) -> None:
        result = self._call_ai(
            context,
            lambda: self.provider.describe(enriched.draft),
            label=f"describe {enriched.item_id}",
        )
        self._account(context, result.usage)
        if result.text.strip():
            enriched.draft.description = result.text.strip()
            enriched.description_source = "generated"
        enriched.provenance.append(
            GenerationProvenance.from_usage(ItemStage.DESCRIBE, result.usage, result.sources),
        )

    def _classify(self, context: _RunContext, enriched: EnrichedItem) -> None:
        result = self._call_ai(
            context,
            lambda: self.provider.classify(enriched.draft, self.categories),
            label=f"classify {enriched.item_id}",
        )
        self._account(context, result.usage)
        enriched.category = result.category
        enriched.categories = list(result.categories)
        enriched.demographics = list(result.demographics)
        enriched.characteristics = dict(result.characteristics)
        enriched.provenance.append(GenerationProvenance.from_usage(ItemStage.CLASSIFY, result.usage))

    def _embed(self, context: _RunContext, enriched: EnrichedItem) -> None:
        text = enriched.draft.content_text()[:EMBEDDING_MAX_CHARS]
        if not text:
            return
        result = self._call_ai(
            context,
            lambda: self.provider.embed(text),
            label=f"embed {enriched.item_id}",
        )
        self._account(context, result.usage)
        enriched.embedding = list(result.vector)
        enriched.provenance.append(GenerationProvenance.from_usage(ItemStage.EMBED, result.usage))

        # Only classified items carry characteristics.
        characteristics = enriched.characteristics_text()[:EMBEDDING_MAX_CHARS]
        if not characteristics:
            return
        result = self._call_ai(
            context,
            lambda: self.provider.embed(characteristics),
            label=f"embed characteristics {enriched.item_id}",
        )
        self._account(context, result.usage)
        enriched.characteristics_embedding = list(result.vector)
        enriched.provenance.append(GenerationProvenance.from_usage(ItemStage.EMBED, result.usage))

    def _upload_images(self, context: _RunContext, enriched: EnrichedItem) -> None:
        blob_store = self.blob_store
        if blob_store is None:
            raise InvalidConfiguration(message="upload_images requires a blob store")
        hosted: list[str] = []
        for position, url in enumerate(enriched.image_urls):
            key = image_key(context.state.store_id, enriched.item_id, position, url)
            hosted.append(
                run_with_retry(
                    lambda url=url, key=key: blob_store.upload_image(url, key),
                    context.io_policy,
                    observer=LoggingRetryObserver(f"image upload {key}"),
                    sleep=self._sleep,
                ),
            )
        enriched.image_urls = hosted

    def _call_ai(self, context: _RunContext, call: Callable[[], T], *, label: str) -> T:
        def _attempt() -> T:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            return call()

        return run_with_retry(
            _attempt,
            context.ai_policy,
            observer=LoggingRetryObserver(label),
            sleep=self._sleep,
        )

    def _account(self, context: _RunContext, usage: TokenUsage) -> None:
        context.state.ledger.record(usage)

    def _after_item(self, context: _RunContext, error: ItemError | None) -> None:
        progress = context.state.record_item(error)
        if self.progress_observer is not None:
            try:
                self.progress_observer.on_progress(context.state.run_id, progress)
            except Exception:  # noqa: BLE001
                logger.warning("Progress observer failed", exc_info=True)
        context.broadcast.progress(progress)

    def _io_policy(self) -> RetryPolicy:
        if self.retry_policy.should_retry is not None:
            return self.retry_policy
        return replace(self.retry_policy, should_retry=_retry_transient)

    def _finish(
        self,
        context: _RunContext,
        status: SyncRunStatus,
        *,
        error: str | None = None,
    ) -> SyncRunSummary:
        state = context.state
        state.transition(status, error=error)
        summary = state.to_summary()

        if status is SyncRunStatus.FAILED and error is not None:
            context.broadcast.error(error)
        else:
            context.broadcast.status(
                status.value,
                processed=summary.processed_count,
                errors=summary.error_count,
                cost_usd=round(summary.cost_usd, 6),
            )

        if self.summary_store is not None:
            try:
                self.summary_store.save_run_summary(summary)
            except Exception:  # noqa: BLE001
                logger.exception("Could not persist summary for sync run %s", state.run_id)

        logger.info(
            "Sync run %s finished: status=%s processed=%d errors=%d cancelled=%d cost=$%.4f",
            state.run_id,
            status.value,
            summary.processed_count,
            summary.error_count,
            summary.cancelled_count,
            summary.cost_usd,
        )
        return summary


def image_key(store_id: str, item_id: str, position: int, url: str) -> str:
    """Blob key for the ``position``-th image of an item, keeping the URL's extension."""

    suffix = PurePosixPath(urlparse(url).path).suffix.lower() or ".jpg"
    safe_item = item_id.replace("/", "_")
    return f"{store_id}/{safe_item}/{position}{suffix}"


def _retry_transient(error: BaseException, _attempt: int) -> bool:
    return is_transient(error)
