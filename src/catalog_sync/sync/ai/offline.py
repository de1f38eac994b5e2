"""Deterministic provider that needs no network; used for demos and dry runs."""

from __future__ import annotations

import hashlib
import math
import re
from array import array
from collections.abc import Sequence
from dataclasses import dataclass

from catalog_sync.sync.ai.base import ClassificationResult, DescriptionResult, EmbeddingResult
from catalog_sync.sync.models import ProductDraft, TokenUsage

OFFLINE_MODEL = "offline-hashing-v1"
_WORD_RE = re.compile(r"[a-z0-9+\-]+")
_DEMOGRAPHIC_HINTS: dict[str, tuple[str, ...]] = {
    "women": ("women", "womens", "woman", "ladies", "female"),
    "men": ("men", "mens", "man", "male"),
    "kids": ("kids", "kid", "children", "girls", "boys", "baby"),
}


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token."""

    return max(1, len(text) // 4) if text else 0


@dataclass(slots=True)
class OfflineProvider:
    """Keyword classification, hashed n-gram embeddings and template descriptions.

    Token counts are estimated from text length so cost accounting has
    something to add up; the default pricing table prices them at zero.
    """

    name: str = "offline"
    dimensions: int = 256
    ngram_size: int = 3

    def classify(self, draft: ProductDraft, categories: Sequence[str]) -> ClassificationResult:
        haystack = _words(" ".join([draft.title, draft.product_type, " ".join(draft.tags)]))
        scored: list[tuple[int, int, str]] = []
        for position, category in enumerate(categories):
            category_words = _words(category)
            if not category_words:
                continue
            hits = sum(1 for word in category_words if word in haystack)
            if hits == len(category_words):
                scored.append((-hits, position, category))
        scored.sort()
        ranked = [category for _, _, category in scored[:3]]

        demographics = [
            demographic
            for demographic, hints in _DEMOGRAPHIC_HINTS.items()
            if any(_stem(hint) in haystack for hint in hints)
        ]
        characteristics: dict[str, str] = {}
        if draft.product_type:
            characteristics["product"] = draft.product_type.lower()
        colors = _colors(draft)
        if colors:
            characteristics["color"] = ", ".join(colors).lower()
        text = draft.content_text()
        return ClassificationResult(
            category=ranked[0] if ranked else None,
            usage=self._usage(input_text=text, output_tokens=8),
            categories=ranked,
            demographics=demographics,
            characteristics=characteristics,
        )

    def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=self._hash_vector(text), usage=self._usage(input_text=text))

    def describe(self, draft: ProductDraft) -> DescriptionResult:
        subject = draft.product_type or "product"
        sentence = f"{draft.title} is a {subject.lower()}"
        if draft.vendor:
            sentence += f" by {draft.vendor}"
        colors = _colors(draft)
        parts = [sentence + "."]
        if colors:
            parts.append(f"Available in {', '.join(colors)}.")
        text = " ".join(parts)
        return DescriptionResult(
            text=text,
            usage=self._usage(input_text=draft.content_text(), output_tokens=estimate_tokens(text)),
        )

    def _usage(self, *, input_text: str, output_tokens: int = 0) -> TokenUsage:
        return TokenUsage(
            provider=self.name,
            model=OFFLINE_MODEL,
            input_tokens=estimate_tokens(input_text),
            output_tokens=output_tokens,
        )

    def _hash_vector(self, text: str) -> list[float]:
        normalized = (text or "").lower().strip()
        vector = array("f", [0.0]) * self.dimensions
        if not normalized:
            return list(vector)
        if len(normalized) < self.ngram_size:
            normalized = normalized + " " * (self.ngram_size - len(normalized))

        for index in range(len(normalized) - self.ngram_size + 1):
            ngram = normalized[index : index + self.ngram_size]
            digest = hashlib.sha1(ngram.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = array("f", (value / norm for value in vector))
        return list(vector)


def _colors(draft: ProductDraft) -> list[str]:
    return sorted({variant.color for variant in draft.variants if variant.color})


def _words(text: str) -> set[str]:
    return {_stem(word) for word in _WORD_RE.findall(text.lower())}


def _stem(word: str) -> str:
    if word.endswith("sses"):
        return word[:-2]
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word
