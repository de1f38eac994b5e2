"""OpenAI-compatible chat and embeddings provider over httpx."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from catalog_sync.sync.ai.base import ClassificationResult, DescriptionResult, EmbeddingResult
from catalog_sync.sync.ai.categories import DEMOGRAPHICS, match_category
from catalog_sync.sync.errors import ErrorKind, ProviderError
from catalog_sync.sync.models import ProductDraft, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_TIMEOUT_SECONDS = 60.0
EMBEDDING_CACHE_LIMIT = 2048

_CLASSIFY_SYSTEM_PROMPT = """\
Extract from the product text the following information and return JSON:
{{
  "product": "detailed item type, e.g. 'high waist pants', 'maxi dress'",
  "characteristics": "item characteristics if present, e.g. 'cotton', 'low rise'",
  "color": "color of the item if present",
  "material": "material of the item if present",
  "demographic": "one of: {demographics}",
  "category": "one category from this list: {categories}",
  "categories": ["up to three categories from the same list, best first"]
}}
Respond in the language of the product text, except for categories which must
come from the list verbatim.
"""

_DESCRIBE_SYSTEM_PROMPT = """\
Write a factual product description of 2-4 sentences for an online store.
Use only the information given; do not invent materials, sizes or prices.
Return plain text without markdown.
"""


class OpenAiProvider:
    """Classify, embed and describe products with an OpenAI-compatible API."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        chat_model: str = DEFAULT_CHAT_MODEL,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("api_key is required")
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._embedding_cache: dict[str, list[float]] = {}
        self._cache_lock = threading.Lock()

    def classify(self, draft: ProductDraft, categories: Sequence[str]) -> ClassificationResult:
        system_prompt = _CLASSIFY_SYSTEM_PROMPT.format(
            demographics=", ".join(DEMOGRAPHICS),
            categories=", ".join(categories),
        )
        body = self._post(
            "/chat/completions",
            {
                "model": self.chat_model,
                "temperature": 0.2,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": _aggregated_content(draft)},
                ],
            },
        )
        usage = _chat_usage(self.name, self.chat_model, body)
        payload = _parse_json_content(body)

        ranked = [
            matched
            for matched in (
                match_category(str(value), categories) for value in payload.get("categories") or []
            )
            if matched is not None
        ]
        primary = match_category(str(payload.get("category") or ""), categories)
        if primary is None and ranked:
            primary = ranked[0]
        if primary is not None and primary not in ranked:
            ranked.insert(0, primary)

        demographic = str(payload.get("demographic") or "").strip().lower()
        characteristics = {
            key: str(payload[key]).strip()
            for key in ("product", "characteristics", "color", "material")
            if payload.get(key)
        }
        return ClassificationResult(
            category=primary,
            usage=usage,
            categories=ranked,
            demographics=[demographic] if demographic in DEMOGRAPHICS else [],
            characteristics=characteristics,
        )

    def embed(self, text: str) -> EmbeddingResult:
        with self._cache_lock:
            cached = self._embedding_cache.get(text)
        if cached is not None:
            logger.debug("Embedding cache hit (%d chars)", len(text))
            return EmbeddingResult(
                vector=list(cached),
                usage=TokenUsage(provider=self.name, model=self.embedding_model),
            )

        body = self._post("/embeddings", {"model": self.embedding_model, "input": text})
        try:
            vector = [float(value) for value in body["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as error:
            raise ProviderError(
                message=f"Malformed embeddings response: {error}",
                kind=ErrorKind.INVALID,
            ) from error
        usage_raw = body.get("usage") or {}
        usage = TokenUsage(
            provider=self.name,
            model=self.embedding_model,
            input_tokens=int(usage_raw.get("prompt_tokens") or 0),
        )
        with self._cache_lock:
            if len(self._embedding_cache) >= EMBEDDING_CACHE_LIMIT:
                self._embedding_cache.pop(next(iter(self._embedding_cache)))
            self._embedding_cache[text] = vector
        return EmbeddingResult(vector=vector, usage=usage)

    def describe(self, draft: ProductDraft) -> DescriptionResult:
        body = self._post(
            "/chat/completions",
            {
                "model": self.chat_model,
                "temperature": 0.4,
                "messages": [
                    {"role": "system", "content": _DESCRIBE_SYSTEM_PROMPT},
                    {"role": "user", "content": _aggregated_content(draft)},
                ],
            },
        )
        return DescriptionResult(
            text=_message_content(body).strip(),
            usage=_chat_usage(self.name, self.chat_model, body),
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        try:
            response = self._client.post(path, json=dict(payload))
        except httpx.TransportError as error:
            raise ProviderError(
                message=f"{self.name} request to {path} failed: {error}",
                kind=ErrorKind.UNREACHABLE,
            ) from error
        if response.is_error:
            raise ProviderError(
                message=f"{self.name} {path} returned HTTP {response.status_code}: "
                f"{response.text[:300]}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as error:
            raise ProviderError(
                message=f"{self.name} {path} returned non-JSON body",
                kind=ErrorKind.INVALID,
            ) from error


def _aggregated_content(draft: ProductDraft) -> str:
    parts = [draft.title]
    if draft.description:
        parts.append(draft.description)
    if draft.vendor:
        parts.append(f"Brand: {draft.vendor}")
    if draft.product_type:
        parts.append(f"Type: {draft.product_type}")
    if draft.tags:
        parts.append(f"Tags: {', '.join(draft.tags)}")
    if draft.collections:
        parts.append(f"Collections: {', '.join(draft.collections)}")
    colors = sorted({variant.color for variant in draft.variants if variant.color})
    sizes = sorted({variant.size for variant in draft.variants if variant.size})
    if colors:
        parts.append(f"Colors: {', '.join(colors)}")
    if sizes:
        parts.append(f"Sizes: {', '.join(sizes)}")
    return ". ".join(parts)


def _message_content(body: Mapping[str, Any]) -> str:
    try:
        return str(body["choices"][0]["message"]["content"] or "")
    except (KeyError, IndexError, TypeError) as error:
        raise ProviderError(
            message=f"Malformed chat completion response: {error}",
            kind=ErrorKind.INVALID,
        ) from error


def _parse_json_content(body: Mapping[str, Any]) -> Mapping[str, Any]:
    content = _message_content(body)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as error:
        raise ProviderError(
            message=f"Classification response is not JSON: {content[:200]!r}",
            kind=ErrorKind.INVALID,
        ) from error
    if not isinstance(parsed, Mapping):
        raise ProviderError(message="Classification response is not an object", kind=ErrorKind.INVALID)
    return parsed


def _chat_usage(provider: str, model: str, body: Mapping[str, Any]) -> TokenUsage:
    """Split prompt tokens into uncached and cached parts."""

    usage = body.get("usage") or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    cached_tokens = int((usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0)
    return TokenUsage(
        provider=provider,
        model=model,
        input_tokens=max(0, prompt_tokens - cached_tokens),
        cached_input_tokens=cached_tokens,
        output_tokens=int(usage.get("completion_tokens") or 0),
    )
