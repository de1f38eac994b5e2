"""Token cost accounting for AI provider calls."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from catalog_sync.sync.errors import PricingNotFound
from catalog_sync.sync.models import TokenUsage

logger = logging.getLogger(__name__)

PRICING_ENV_VAR = "CATALOG_SYNC_LLM_PRICING"
WILDCARD_MODEL = "*"
TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Per-model pricing in USD per 1M tokens.

    ``cached_input_per_1m`` is ``None`` when the model has no discounted rate
    for cached prompt tokens; those tokens are then billed as regular input.
    """

    input_per_1m: float
    output_per_1m: float
    cached_input_per_1m: float | None = None

    @property
    def effective_cached_input_per_1m(self) -> float:
        if self.cached_input_per_1m is None:
            return self.input_per_1m
        return self.cached_input_per_1m


DEFAULT_PRICING: dict[tuple[str, str], ModelPricing] = {
    ("openai", "gpt-4o-mini"): ModelPricing(
        input_per_1m=0.15,
        output_per_1m=0.60,
        cached_input_per_1m=0.025,
    ),
    ("openai", "text-embedding-3-small"): ModelPricing(input_per_1m=0.02, output_per_1m=0.0),
    ("gemini", "gemini-2.5-flash"): ModelPricing(
        input_per_1m=0.10,
        output_per_1m=0.40,
        cached_input_per_1m=0.025,
    ),
    ("offline", WILDCARD_MODEL): ModelPricing(input_per_1m=0.0, output_per_1m=0.0),
}


class PricingTable:
    """Immutable provider/model price lookup.

    Exact ``(provider, model)`` rows win over a per-provider ``*`` row.
    Provider names are case-insensitive; model names are not.
    """

    def __init__(self, rows: Mapping[tuple[str, str], ModelPricing] | None = None) -> None:
        normalized = {
            (provider.strip().lower(), model.strip()): pricing
            for (provider, model), pricing in (rows or {}).items()
        }
        self._rows: Mapping[tuple[str, str], ModelPricing] = MappingProxyType(normalized)

    @classmethod
    def defaults(cls) -> PricingTable:
        return cls(DEFAULT_PRICING)

    @classmethod
    def from_env(cls, raw: str | None = None) -> PricingTable:
        """Built-in defaults overlaid with ``CATALOG_SYNC_LLM_PRICING`` entries."""

        value = os.getenv(PRICING_ENV_VAR, "") if raw is None else raw
        rows = dict(DEFAULT_PRICING)
        rows.update(parse_pricing_mapping(value))
        return cls(rows)

    def lookup(self, provider: str, model: str) -> ModelPricing:
        key_provider = provider.strip().lower()
        direct = self._rows.get((key_provider, model.strip()))
        if direct is not None:
            return direct
        wildcard = self._rows.get((key_provider, WILDCARD_MODEL))
        if wildcard is not None:
            return wildcard
        raise PricingNotFound(
            message=f"No pricing configured for {provider}:{model}",
            provider=provider,
            model=model,
        )

    def rows(self) -> Iterable[tuple[tuple[str, str], ModelPricing]]:
        return sorted(self._rows.items())

    def __len__(self) -> int:
        return len(self._rows)


class CostAccountant:
    """Price token usage against an injected :class:`PricingTable`."""

    def __init__(self, pricing_table: PricingTable) -> None:
        self.pricing_table = pricing_table

    def price(self, provider: str, model: str, usage: TokenUsage) -> float:
        """USD cost for one call; raises :class:`PricingNotFound` on unknown pairs."""

        pricing = self.pricing_table.lookup(provider, model)
        return (
            (usage.input_tokens / TOKENS_PER_UNIT) * pricing.input_per_1m
            + (usage.cached_input_tokens / TOKENS_PER_UNIT) * pricing.effective_cached_input_per_1m
            + (usage.output_tokens / TOKENS_PER_UNIT) * pricing.output_per_1m
        )

    def price_usage(self, usage: TokenUsage) -> float:
        return self.price(usage.provider, usage.model, usage)


@dataclass(slots=True)
class ProviderTotals:
    """Accumulated spend and token counts for one provider."""

    cost_usd: float = 0.0
    calls: int = 0
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0


class CostLedger:
    """Thread-safe per-run cost accumulator.

    Unknown pricing never blocks a run: the call is logged and counted at 0 USD.
    """

    def __init__(self, accountant: CostAccountant) -> None:
        self.accountant = accountant
        self._totals: dict[str, ProviderTotals] = {}
        self._lock = threading.Lock()

    def record(self, usage: TokenUsage) -> float:
        try:
            cost = self.accountant.price_usage(usage)
        except PricingNotFound as error:
            logger.warning("Cost unknown, counting as 0 USD: %s", error)
            cost = 0.0

        with self._lock:
            totals = self._totals.setdefault(usage.provider, ProviderTotals())
            totals.cost_usd += cost
            totals.calls += 1
            totals.input_tokens += usage.input_tokens
            totals.cached_input_tokens += usage.cached_input_tokens
            totals.output_tokens += usage.output_tokens
        return cost

    @property
    def total_usd(self) -> float:
        with self._lock:
            return sum(totals.cost_usd for totals in self._totals.values())

    def by_provider(self) -> dict[str, float]:
        with self._lock:
            return {provider: totals.cost_usd for provider, totals in self._totals.items()}

    def totals(self) -> dict[str, ProviderTotals]:
        with self._lock:
            return {
                provider: ProviderTotals(
                    cost_usd=totals.cost_usd,
                    calls=totals.calls,
                    input_tokens=totals.input_tokens,
                    cached_input_tokens=totals.cached_input_tokens,
                    output_tokens=totals.output_tokens,
                )
                for provider, totals in self._totals.items()
            }


def parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse ``CATALOG_SYNC_LLM_PRICING``.

    Format:
    - `provider:model:input_per_1m:output_per_1m[:cached_input_per_1m]`
    - multiple entries separated by `,`
    - model may be `*` to cover every model of a provider

    Malformed entries are skipped with a warning.
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) not in {4, 5} or not parts[0] or not parts[1]:
            logger.warning("Ignoring malformed %s entry: %r", PRICING_ENV_VAR, value)
            continue
        provider, model = parts[0], parts[1]
        try:
            input_per_1m = float(parts[2])
            output_per_1m = float(parts[3])
            cached_input_per_1m = float(parts[4]) if len(parts) == 5 else None
        except ValueError:
            logger.warning("Ignoring non-numeric %s entry: %r", PRICING_ENV_VAR, value)
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
            cached_input_per_1m=cached_input_per_1m,
        )
    return parsed
