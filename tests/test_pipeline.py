from __future__ import annotations

import json
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path

import allure
import pytest

from catalog_sync.storage.repository import SQLiteCatalogRepository
from catalog_sync.sync.ai import ClassificationResult, DescriptionResult, EmbeddingResult
from catalog_sync.sync.ai.categories import DEFAULT_CATEGORIES
from catalog_sync.sync.ai.offline import OfflineProvider
from catalog_sync.sync.broadcast import CallbackBroadcaster
from catalog_sync.sync.errors import AdapterError, ErrorKind, PersistenceError, ProviderError
from catalog_sync.sync.models import (
    EnrichedItem,
    ItemError,
    ItemStage,
    ProductDraft,
    SourceItem,
    SyncOptions,
    SyncProgress,
    SyncRunStatus,
    SyncRunSummary,
    TokenUsage,
)
from catalog_sync.sync.pipeline import SyncPipeline, image_key
from catalog_sync.sync.pool import CancellationToken
from catalog_sync.sync.pricing import ModelPricing, PricingTable
from catalog_sync.sync.retry import RetryPolicy

pytestmark = [
    allure.epic("Sync Runtime"),
    allure.feature("Sync Pipeline Orchestrator"),
]

FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay_seconds=0.0, max_delay_seconds=0.0)


class ListAdapter:
    name = "fake"

    def __init__(self, count: int, *, list_error: Exception | None = None) -> None:
        self.items = [
            SourceItem(
                source_id=f"item-{index}",
                payload={"title": f"Product {index}", "description": "Soft cotton tee"},
            )
            for index in range(1, count + 1)
        ]
        self.list_error = list_error
        self.list_calls = 0

    def list_items(self) -> Iterable[SourceItem]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.items)

    def transform(self, item: SourceItem) -> ProductDraft:
        if item.payload.get("title") is None:
            raise AdapterError(message=f"{item.source_id} has no title", kind=ErrorKind.INVALID)
        return ProductDraft(
            source_id=item.source_id,
            title=str(item.payload["title"]),
            description=str(item.payload.get("description") or ""),
            image_urls=list(item.payload.get("image_urls") or []),
        )


class MemoryStore:
    def __init__(
        self,
        *,
        failing_ids: Sequence[str] = (),
        existing: Iterable[str] = (),
        ping_error: Exception | None = None,
        failure_kind: ErrorKind = ErrorKind.INVALID,
    ) -> None:
        self.failing_ids = set(failing_ids)
        self.failure_kind = failure_kind
        self.products: dict[str, EnrichedItem | None] = dict.fromkeys(existing)
        self.ping_error = ping_error
        self.summaries: list[SyncRunSummary] = []
        self.upsert_calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    def upsert(self, store_id: str, item: EnrichedItem) -> None:  # noqa: ARG002
        with self._lock:
            self.upsert_calls[item.item_id] = self.upsert_calls.get(item.item_id, 0) + 1
        if item.item_id in self.failing_ids:
            raise PersistenceError(
                message=f"constraint violated for {item.item_id}",
                kind=self.failure_kind,
            )
        with self._lock:
            self.products[item.item_id] = item

    def existing_ids(self, store_id: str, source_ids: Iterable[str]) -> set[str]:  # noqa: ARG002
        with self._lock:
            return {source_id for source_id in source_ids if source_id in self.products}

    def save_run_summary(self, summary: SyncRunSummary) -> None:
        self.summaries.append(summary)

    def list_run_summaries(self, store_id: str, *, limit: int = 20) -> list[SyncRunSummary]:
        return [summary for summary in self.summaries if summary.store_id == store_id][:limit]

    def get_run_summary(self, run_id: str) -> SyncRunSummary | None:
        return next((summary for summary in self.summaries if summary.run_id == run_id), None)


class ScriptedProvider:
    """Provider with fixed usage numbers and optional scripted failures."""

    def __init__(
        self,
        name: str = "openai",
        *,
        embed_failures: list[Exception] | None = None,
        characteristics: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.embed_failures = list(embed_failures or [])
        self.characteristics = dict(characteristics or {})
        self.embed_calls = 0
        self.embedded_texts: list[str] = []
        self._lock = threading.Lock()

    def classify(self, draft: ProductDraft, categories: Sequence[str]) -> ClassificationResult:
        return ClassificationResult(
            category=categories[0],
            usage=TokenUsage(self.name, "gpt-4o-mini", input_tokens=1_000, output_tokens=100),
            categories=[categories[0]],
            characteristics=dict(self.characteristics),
        )

    def embed(self, text: str) -> EmbeddingResult:
        with self._lock:
            self.embed_calls += 1
            self.embedded_texts.append(text)
            failure = self.embed_failures.pop(0) if self.embed_failures else None
        if failure is not None:
            raise failure
        return EmbeddingResult(
            vector=[0.1, 0.2, 0.3],
            usage=TokenUsage(self.name, "text-embedding-3-small", input_tokens=50),
        )

    def describe(self, draft: ProductDraft) -> DescriptionResult:
        return DescriptionResult(
            text=f"About {draft.title}.",
            usage=TokenUsage(self.name, "gpt-4o-mini", input_tokens=200, output_tokens=40),
        )


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[SyncProgress] = []
        self._lock = threading.Lock()

    def on_progress(self, run_id: str, progress: SyncProgress) -> None:  # noqa: ARG002
        with self._lock:
            self.events.append(progress)


class RecordingBlobStore:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []

    def upload_image(self, url: str, key: str) -> str:
        self.uploads.append((url, key))
        return f"https://cdn.example.com/{key}"


def _pipeline(
    adapter: ListAdapter,
    store: MemoryStore,
    *,
    provider=None,
    pricing_table: PricingTable | None = None,
    **kwargs,
) -> SyncPipeline:
    return SyncPipeline(
        adapter=adapter,
        provider=provider or OfflineProvider(),
        catalog_store=store,
        pricing_table=pricing_table or PricingTable.defaults(),
        summary_store=store,
        retry_policy=FAST_RETRY,
        sleep=lambda _seconds: None,
        **kwargs,
    )


def test_item_failure_is_recorded_and_run_completes() -> None:
    adapter = ListAdapter(10)
    store = MemoryStore(failing_ids=["item-5"])
    observer = RecordingObserver()

    summary = _pipeline(adapter, store, progress_observer=observer).run(
        "store-1",
        SyncOptions(concurrency=3, batch_size=4),
    )

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.total == 10
    assert summary.processed_count == 10
    assert summary.error_count == 1
    assert summary.errors == [
        ItemError(
            item_id="item-5",
            stage=ItemStage.PERSIST,
            message="constraint violated for item-5",
        ),
    ]
    assert len(store.products) == 9
    assert store.upsert_calls["item-5"] == 1
    assert sorted(event.processed for event in observer.events) == list(range(1, 11))
    assert max(event.percentage for event in observer.events) == 100
    assert store.summaries == [summary]


def test_transient_persist_failure_is_recorded_after_exhausting_retries() -> None:
    store = MemoryStore(failing_ids=["item-5"], failure_kind=ErrorKind.UNREACHABLE)

    summary = _pipeline(ListAdapter(10), store).run(
        "store-1",
        SyncOptions(concurrency=3, batch_size=4),
    )

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.processed_count == 10
    assert summary.error_count == 1
    assert summary.errors[0].item_id == "item-5"
    assert summary.errors[0].stage is ItemStage.PERSIST
    assert store.upsert_calls["item-5"] == FAST_RETRY.max_attempts
    assert len(store.products) == 9


def test_enrichment_fills_category_embedding_and_provenance() -> None:
    adapter = ListAdapter(1)
    adapter.items = [
        SourceItem(source_id="dress-1", payload={"title": "Floral Midi Dresses", "description": ""}),
    ]
    store = MemoryStore()

    summary = _pipeline(adapter, store).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.COMPLETED
    item = store.products["dress-1"]
    assert item.category == "Dresses"
    assert item.description_source == "generated"
    assert item.draft.description.startswith("Floral Midi Dresses is a product")
    assert item.embedding is not None and len(item.embedding) == 256
    assert [entry.stage for entry in item.provenance] == [
        ItemStage.DESCRIBE,
        ItemStage.CLASSIFY,
        ItemStage.EMBED,
    ]


def test_disabled_toggles_skip_ai_stages() -> None:
    provider = ScriptedProvider()
    store = MemoryStore()

    summary = _pipeline(ListAdapter(2), store, provider=provider).run(
        "store-1",
        SyncOptions(generate_embeddings=False, classify_products=False),
    )

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.cost_usd == 0.0
    assert provider.embed_calls == 0
    assert all(item.embedding is None and item.category is None for item in store.products.values())


def test_characteristics_get_their_own_embedding() -> None:
    provider = ScriptedProvider(characteristics={"material": "cotton", "color": "navy"})
    store = MemoryStore()

    summary = _pipeline(ListAdapter(1), store, provider=provider).run("store-1", SyncOptions())

    assert summary.error_count == 0
    item = store.products["item-1"]
    assert provider.embedded_texts == ["Product 1 Soft cotton tee", "color: navy, material: cotton"]
    assert item.embedding == [0.1, 0.2, 0.3]
    assert item.characteristics_embedding == [0.1, 0.2, 0.3]
    assert [entry.stage for entry in item.provenance] == [
        ItemStage.CLASSIFY,
        ItemStage.EMBED,
        ItemStage.EMBED,
    ]


def test_empty_characteristics_skip_the_second_embedding() -> None:
    provider = ScriptedProvider(characteristics={"color": "  "})
    store = MemoryStore()

    _pipeline(ListAdapter(1), store, provider=provider).run("store-1", SyncOptions())

    assert provider.embed_calls == 1
    assert store.products["item-1"].characteristics_embedding is None


def test_characteristics_embedding_requires_classification() -> None:
    provider = ScriptedProvider(characteristics={"color": "navy"})
    store = MemoryStore()

    _pipeline(ListAdapter(1), store, provider=provider).run(
        "store-1",
        SyncOptions(classify_products=False),
    )

    assert provider.embed_calls == 1
    assert store.products["item-1"].characteristics_embedding is None


def test_resync_with_ai_stages_off_keeps_stored_enrichment(tmp_path: Path) -> None:
    repository = SQLiteCatalogRepository(tmp_path / "catalog.db")
    repository.init_schema()

    def _run(options: SyncOptions) -> SyncRunSummary:
        return SyncPipeline(
            adapter=ListAdapter(2),
            provider=ScriptedProvider(characteristics={"color": "navy"}),
            catalog_store=repository,
            pricing_table=PricingTable.defaults(),
            summary_store=repository,
            retry_policy=FAST_RETRY,
            sleep=lambda _seconds: None,
        ).run("store-1", options)

    try:
        first = _run(SyncOptions())
        second = _run(SyncOptions(generate_embeddings=False, classify_products=False))
        row = repository.get_product("store-1", "item-1")
    finally:
        repository.close()

    assert first.status is SyncRunStatus.COMPLETED
    assert second.status is SyncRunStatus.COMPLETED
    assert row is not None
    assert row.category == DEFAULT_CATEGORIES[0]
    assert row.embedding_dim == 3
    assert row.characteristics_embedding_dim == 3
    assert json.loads(row.characteristics_json) == {"color": "navy"}


def test_costs_are_accumulated_per_provider() -> None:
    summary = _pipeline(ListAdapter(2), MemoryStore(), provider=ScriptedProvider()).run(
        "store-1",
        SyncOptions(),
    )

    per_item = (1_000 * 0.15 + 100 * 0.60) / 1_000_000 + (50 * 0.02) / 1_000_000
    assert summary.cost_usd == pytest.approx(2 * per_item)
    assert summary.cost_by_provider == {"openai": pytest.approx(2 * per_item)}


def test_unknown_pricing_counts_as_zero_cost() -> None:
    summary = _pipeline(
        ListAdapter(3),
        MemoryStore(),
        provider=ScriptedProvider(name="mystery"),
        pricing_table=PricingTable({("openai", "*"): ModelPricing(1.0, 1.0)}),
    ).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.error_count == 0
    assert summary.cost_usd == 0.0
    assert summary.cost_by_provider == {"mystery": 0.0}


def test_rate_limited_ai_call_is_retried() -> None:
    provider = ScriptedProvider(
        embed_failures=[ProviderError(message="slow down", status=429)],
    )
    store = MemoryStore()

    summary = _pipeline(ListAdapter(1), store, provider=provider).run(
        "store-1",
        SyncOptions(classify_products=False),
    )

    assert summary.error_count == 0
    assert provider.embed_calls == 2
    assert store.products["item-1"].embedding == [0.1, 0.2, 0.3]


def test_invalid_ai_response_fails_the_item_at_its_stage() -> None:
    provider = ScriptedProvider(
        embed_failures=[ProviderError(message="bad request", status=400)],
    )

    summary = _pipeline(ListAdapter(1), MemoryStore(), provider=provider).run(
        "store-1",
        SyncOptions(classify_products=False),
    )

    assert summary.status is SyncRunStatus.COMPLETED
    assert provider.embed_calls == 1
    assert summary.errors[0].stage is ItemStage.EMBED


def test_transform_failure_is_recorded_at_transform_stage() -> None:
    adapter = ListAdapter(2)
    adapter.items[1] = SourceItem(source_id="item-2", payload={})

    summary = _pipeline(adapter, MemoryStore()).run("store-1", SyncOptions())

    assert summary.processed_count == 2
    assert summary.errors == [
        ItemError(item_id="item-2", stage=ItemStage.TRANSFORM, message="item-2 has no title"),
    ]


def test_cancel_after_three_items_ends_cancelled() -> None:
    token = CancellationToken()

    class CancellingObserver:
        def on_progress(self, run_id: str, progress: SyncProgress) -> None:  # noqa: ARG002
            if progress.processed == 3:
                token.cancel()

    summary = _pipeline(ListAdapter(10), MemoryStore(), progress_observer=CancellingObserver()).run(
        "store-1",
        SyncOptions(concurrency=1, batch_size=10),
        cancel_token=token,
    )

    assert summary.status is SyncRunStatus.CANCELLED
    assert summary.processed_count == 3
    assert summary.cancelled_count == 7
    assert summary.ended_at is not None


def test_expired_deadline_ends_cancelled() -> None:
    now = [0.0]
    token = CancellationToken(deadline_seconds=1.0, clock=lambda: now[0])
    now[0] = 2.0

    summary = _pipeline(ListAdapter(4), MemoryStore()).run(
        "store-1",
        SyncOptions(),
        cancel_token=token,
    )

    assert summary.status is SyncRunStatus.CANCELLED
    assert summary.processed_count == 0
    assert summary.cancelled_count == 4


def test_adapter_unreachable_fails_run_after_retries() -> None:
    adapter = ListAdapter(3, list_error=ConnectionError("shop is down"))

    summary = _pipeline(adapter, MemoryStore()).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.FAILED
    assert adapter.list_calls == 3
    assert summary.error is not None and "shop is down" in summary.error
    assert summary.processed_count == 0


def test_persistence_unavailable_fails_run() -> None:
    store = MemoryStore(
        ping_error=PersistenceError(message="database unreachable", kind=ErrorKind.UNREACHABLE),
    )

    summary = _pipeline(ListAdapter(3), store).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.FAILED
    assert summary.error is not None and "database unreachable" in summary.error
    assert store.summaries == [summary]


@pytest.mark.parametrize(
    "options",
    [
        SyncOptions(concurrency=0),
        SyncOptions(batch_size=0),
        SyncOptions(deadline_seconds=0),
        SyncOptions(upload_images=True),
    ],
)
def test_invalid_configuration_fails_run(options: SyncOptions) -> None:
    adapter = ListAdapter(2)

    summary = _pipeline(adapter, MemoryStore()).run("store-1", options)

    assert summary.status is SyncRunStatus.FAILED
    assert adapter.list_calls == 0


def test_only_new_skips_stored_products() -> None:
    store = MemoryStore(existing=["item-1", "item-3"])

    summary = _pipeline(ListAdapter(4), store).run("store-1", SyncOptions(only_new=True))

    assert summary.total == 2
    assert summary.skipped_count == 2
    assert summary.processed_count == 2
    assert set(store.upsert_calls) == {"item-2", "item-4"}


def test_broadcaster_failures_never_break_the_run() -> None:
    def _explode(_channel: str, _payload) -> None:
        raise RuntimeError("socket closed")

    summary = _pipeline(
        ListAdapter(3),
        MemoryStore(),
        broadcaster=CallbackBroadcaster(_explode),
    ).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.processed_count == 3


def test_broadcast_messages_follow_run_lifecycle() -> None:
    messages: list[tuple[str, dict]] = []
    lock = threading.Lock()

    def _collect(channel: str, payload) -> None:
        with lock:
            messages.append((channel, dict(payload)))

    summary = _pipeline(ListAdapter(2), MemoryStore(), broadcaster=CallbackBroadcaster(_collect)).run(
        "shop-9",
        SyncOptions(),
    )

    assert {channel for channel, _ in messages} == {"shop-9_scan"}
    assert {payload["run_id"] for _, payload in messages} == {summary.run_id}
    types = [payload["type"] for _, payload in messages]
    assert types[0] == "sync_status"
    assert types.count("sync_progress") == 2
    assert messages[-1][1]["status"] == "completed"


def test_failed_run_broadcasts_error_then_failed_status() -> None:
    messages: list[dict] = []

    summary = _pipeline(
        ListAdapter(1, list_error=AdapterError(message="token revoked", kind=ErrorKind.INVALID)),
        MemoryStore(),
        broadcaster=CallbackBroadcaster(lambda _channel, payload: messages.append(dict(payload))),
    ).run("store-1", SyncOptions())

    assert [message["type"] for message in messages] == ["error", "sync_status"]
    assert messages[1]["status"] == "failed"
    assert all(message["run_id"] == summary.run_id for message in messages)


def test_images_are_uploaded_when_enabled() -> None:
    adapter = ListAdapter(1)
    adapter.items = [
        SourceItem(
            source_id="item-1",
            payload={
                "title": "Canvas Bag",
                "description": "Tote",
                "image_urls": ["https://shop.example.com/a.png", "https://shop.example.com/b"],
            },
        ),
    ]
    store = MemoryStore()
    blobs = RecordingBlobStore()

    summary = _pipeline(adapter, store, blob_store=blobs).run(
        "store-1",
        SyncOptions(upload_images=True),
    )

    assert summary.error_count == 0
    assert [key for _, key in blobs.uploads] == ["store-1/item-1/0.png", "store-1/item-1/1.jpg"]
    assert store.products["item-1"].image_urls == [
        "https://cdn.example.com/store-1/item-1/0.png",
        "https://cdn.example.com/store-1/item-1/1.jpg",
    ]


def test_image_key_keeps_extension_and_sanitizes_item_id() -> None:
    assert image_key("s", "a/b", 2, "https://x.example.com/img/photo.WEBP?v=1") == "s/a_b/2.webp"


def test_state_rejects_transitions_out_of_terminal_status() -> None:
    pipeline = _pipeline(ListAdapter(1), MemoryStore())
    state = pipeline.new_run("store-1")

    pipeline.run("store-1", SyncOptions(), state=state)

    assert state.status is SyncRunStatus.COMPLETED
    with pytest.raises(RuntimeError, match="cannot move"):
        state.transition(SyncRunStatus.RUNNING)


def test_empty_catalog_completes_immediately() -> None:
    summary = _pipeline(ListAdapter(0), MemoryStore()).run("store-1", SyncOptions())

    assert summary.status is SyncRunStatus.COMPLETED
    assert summary.total == 0
    assert summary.processed_count == 0
