"""Domain models for catalog sync runs, items, and enrichment results."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class SyncRunStatus(str, Enum):
    """Lifecycle states for one sync run."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SyncRunStatus.COMPLETED, SyncRunStatus.FAILED, SyncRunStatus.CANCELLED},
)


class ItemStage(str, Enum):
    """Per-item pipeline stages, in execution order."""

    TRANSFORM = "transform"
    DESCRIBE = "describe"
    CLASSIFY = "classify"
    EMBED = "embed"
    UPLOAD = "upload"
    PERSIST = "persist"


@dataclass(frozen=True, slots=True)
class SourceItem:
    """Platform-native product record as returned by an adapter."""

    source_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProductVariant:
    """Normalized variant of a product."""

    variant_id: str
    title: str = ""
    sku: str = ""
    price: float | None = None
    compare_at_price: float | None = None
    available: bool = True
    color: str = ""
    size: str = ""


@dataclass(slots=True)
class ProductDraft:
    """Platform-neutral product produced by the transform stage."""

    source_id: str
    title: str
    description: str = ""
    handle: str = ""
    vendor: str = ""
    product_type: str = ""
    sku: str = ""
    currency: str = "USD"
    tags: list[str] = field(default_factory=list)
    collections: list[str] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    variants: list[ProductVariant] = field(default_factory=list)

    def content_text(self) -> str:
        """Text used for embeddings and classification prompts."""

        parts = [self.title, self.description, self.product_type, " ".join(self.tags)]
        return " ".join(part for part in parts if part)


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token counts reported for one AI call."""

    provider: str
    model: str
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.cached_input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class GroundingSource:
    """External source backing a grounded generation."""

    title: str
    url: str


@dataclass(frozen=True, slots=True)
class GenerationProvenance:
    """Where one enrichment field came from."""

    stage: ItemStage
    provider: str
    model: str
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    sources: tuple[GroundingSource, ...] = ()

    @classmethod
    def from_usage(
        cls,
        stage: ItemStage,
        usage: TokenUsage,
        sources: tuple[GroundingSource, ...] = (),
    ) -> GenerationProvenance:
        return cls(
            stage=stage,
            provider=usage.provider,
            model=usage.model,
            input_tokens=usage.input_tokens,
            cached_input_tokens=usage.cached_input_tokens,
            output_tokens=usage.output_tokens,
            sources=sources,
        )


@dataclass(slots=True)
class EnrichedItem:
    """Product ready for persistence: draft fields plus AI-derived metadata."""

    source: SourceItem
    draft: ProductDraft
    category: str | None = None
    categories: list[str] = field(default_factory=list)
    demographics: list[str] = field(default_factory=list)
    characteristics: dict[str, str] = field(default_factory=dict)
    description_source: str = "original"
    embedding: list[float] | None = None
    characteristics_embedding: list[float] | None = None
    image_urls: list[str] = field(default_factory=list)
    provenance: list[GenerationProvenance] = field(default_factory=list)

    @property
    def item_id(self) -> str:
        return self.source.source_id

    def ran_stage(self, stage: ItemStage) -> bool:
        return any(entry.stage is stage for entry in self.provenance)

    def characteristics_text(self) -> str:
        """``key: value`` pairs for the characteristics embedding; empty when nothing was extracted."""

        return ", ".join(
            f"{key}: {value.strip()}"
            for key, value in sorted(self.characteristics.items())
            if value and value.strip()
        )


@dataclass(slots=True)
class BatchEntry(Generic[T]):
    """One slot of a worker-pool result, addressed by input index."""

    index: int
    value: T | None = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


@dataclass(frozen=True, slots=True)
class ItemError:
    """Item-level failure recorded on the run."""

    item_id: str
    stage: ItemStage
    message: str


@dataclass(slots=True)
class SyncOptions:
    """Run-level toggles and limits."""

    generate_embeddings: bool = True
    classify_products: bool = True
    upload_images: bool = False
    generate_descriptions: bool = True
    only_new: bool = False
    concurrency: int = 5
    batch_size: int = 10
    deadline_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class SyncProgress:
    """Progress payload published after each item."""

    processed: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed * 100 / self.total)


@dataclass(frozen=True, slots=True)
class SyncStatusView:
    """Pollable status of a run."""

    run_id: str
    store_id: str
    status: SyncRunStatus
    processed: int
    total: int
    error_count: int
    cost_usd: float
    error: str | None = None


@dataclass(slots=True)
class SyncRunSummary:
    """Terminal record of one run, persisted once."""

    run_id: str
    store_id: str
    status: SyncRunStatus
    started_at: datetime
    ended_at: datetime | None
    total: int = 0
    processed_count: int = 0
    error_count: int = 0
    cancelled_count: int = 0
    skipped_count: int = 0
    cost_usd: float = 0.0
    cost_by_provider: dict[str, float] = field(default_factory=dict)
    errors: list[ItemError] = field(default_factory=list)
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
