"""AI provider contracts and call results."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from catalog_sync.sync.models import GroundingSource, ProductDraft, TokenUsage


@dataclass(slots=True)
class ClassificationResult:
    """Category assignment for one product."""

    category: str | None
    usage: TokenUsage
    categories: list[str] = field(default_factory=list)
    demographics: list[str] = field(default_factory=list)
    characteristics: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class EmbeddingResult:
    """Vector for one text."""

    vector: list[float]
    usage: TokenUsage


@dataclass(slots=True)
class DescriptionResult:
    """Generated product description, optionally grounded in web sources."""

    text: str
    usage: TokenUsage
    sources: tuple[GroundingSource, ...] = ()


class AiProvider(Protocol):
    """Protocol implemented by AI enrichment providers.

    Failures are raised as :class:`catalog_sync.sync.errors.ProviderError`.
    """

    name: str

    def classify(self, draft: ProductDraft, categories: Sequence[str]) -> ClassificationResult:
        """Pick the best matching categories for ``draft``."""
        raise NotImplementedError

    def embed(self, text: str) -> EmbeddingResult:
        """Embed ``text`` into a vector."""
        raise NotImplementedError

    def describe(self, draft: ProductDraft) -> DescriptionResult:
        """Write a description for a product that has none."""
        raise NotImplementedError
