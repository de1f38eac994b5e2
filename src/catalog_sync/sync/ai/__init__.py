"""AI enrichment providers."""

from catalog_sync.sync.ai.base import (
    AiProvider,
    ClassificationResult,
    DescriptionResult,
    EmbeddingResult,
)
from catalog_sync.sync.ai.offline import OfflineProvider
from catalog_sync.sync.ai.openai_provider import OpenAiProvider

__all__ = [
    "AiProvider",
    "ClassificationResult",
    "DescriptionResult",
    "EmbeddingResult",
    "OfflineProvider",
    "OpenAiProvider",
]
