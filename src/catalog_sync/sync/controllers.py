"""Controllers for sync CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from catalog_sync.config import Settings
from catalog_sync.storage.blobs import FilesystemBlobStore
from catalog_sync.storage.repository import SQLiteCatalogRepository
from catalog_sync.sync.adapters import JsonFileAdapter, PlatformAdapter, ShopifyAdapter
from catalog_sync.sync.ai import AiProvider, OfflineProvider, OpenAiProvider
from catalog_sync.sync.broadcast import LoggingBroadcaster, ProgressBroadcaster, WebhookBroadcaster
from catalog_sync.sync.models import SyncOptions, SyncRunStatus, SyncRunSummary, TokenUsage
from catalog_sync.sync.pipeline import SyncPipeline
from catalog_sync.sync.pricing import CostAccountant, PricingTable
from catalog_sync.sync.ratelimit import RequestRateLimiter

CATALOG_FILE_REQUIRED = "--catalog-file is required for the json adapter."


@dataclass(slots=True)
class SyncRunCommand:
    """CLI inputs for sync run command."""

    db_path: Path | None
    store_id: str
    adapter: str
    catalog_file: Path | None
    concurrency: int | None
    batch_size: int | None
    deadline_seconds: float | None
    only_new: bool | None
    generate_embeddings: bool | None
    classify_products: bool | None
    generate_descriptions: bool | None
    upload_images: bool | None
    show_errors: int


@dataclass(slots=True)
class SyncHistoryCommand:
    """CLI inputs for run history command."""

    db_path: Path | None
    store_id: str
    limit: int


@dataclass(slots=True)
class SyncShowCommand:
    """CLI inputs for single run inspection."""

    db_path: Path | None
    run_id: str
    show_errors: int


@dataclass(slots=True)
class PricingEstimateCommand:
    """CLI inputs for cost estimate command."""

    provider: str
    model: str
    input_tokens: int
    cached_input_tokens: int
    output_tokens: int


@dataclass(slots=True)
class SyncRunResult:
    """Rendered lines plus whether the run ended without a run-level failure."""

    lines: list[str]
    success: bool


class SyncCliController:
    """Coordinates sync command execution."""

    def run_sync(self, command: SyncRunCommand) -> SyncRunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_sync(adapter=command.adapter)
        if command.adapter == "json" and command.catalog_file is None:
            raise ValueError(CATALOG_FILE_REQUIRED)
        options = _effective_options(settings, command)

        with ExitStack() as stack:
            repository = stack.enter_context(_repository(settings))
            adapter = _build_adapter(settings, command, stack)
            provider = _build_provider(settings, stack)
            blob_store = None
            if options.upload_images:
                blob_store = FilesystemBlobStore(
                    settings.storage.blob_dir,
                    public_base_url=settings.storage.blob_base_url,
                )
                stack.callback(blob_store.close)
            pipeline = SyncPipeline(
                adapter=adapter,
                provider=provider,
                catalog_store=repository,
                pricing_table=PricingTable.from_env(),
                blob_store=blob_store,
                summary_store=repository,
                broadcaster=_build_broadcaster(settings, stack),
                retry_policy=settings.retry.to_policy(),
                rate_limiter=RequestRateLimiter(settings.ai.max_requests_per_minute),
            )
            summary = pipeline.run(command.store_id, options)

        return SyncRunResult(
            lines=_summary_lines(summary, show_errors=command.show_errors),
            success=summary.status is not SyncRunStatus.FAILED,
        )

    def history(self, command: SyncHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summaries = repository.list_run_summaries(command.store_id, limit=command.limit)
        if not summaries:
            return [f"No sync runs recorded for store {command.store_id}."]

        lines = [f"Recent sync runs for store {command.store_id}:"]
        for summary in summaries:
            duration = summary.duration_seconds
            lines.append(
                f"- {summary.run_id} {summary.status.value} "
                f"started={summary.started_at.isoformat()} "
                f"duration={'-' if duration is None else f'{duration:.1f}s'} "
                f"processed={summary.processed_count}/{summary.total} "
                f"errors={summary.error_count} cost=${summary.cost_usd:.4f}",
            )
        return lines

    def show(self, command: SyncShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = repository.get_run_summary(command.run_id)
        if summary is None:
            raise ValueError(f"Sync run not found: {command.run_id}")
        return _summary_lines(summary, show_errors=command.show_errors)

    def pricing_table(self) -> list[str]:
        table = PricingTable.from_env()
        lines = ["provider/model: input, cached input, output (USD per 1M tokens)"]
        for (provider, model), pricing in table.rows():
            lines.append(
                f"- {provider}/{model}: {pricing.input_per_1m:g}, "
                f"{pricing.effective_cached_input_per_1m:g}, {pricing.output_per_1m:g}",
            )
        return lines

    def estimate(self, command: PricingEstimateCommand) -> list[str]:
        accountant = CostAccountant(PricingTable.from_env())
        usage = TokenUsage(
            provider=command.provider,
            model=command.model,
            input_tokens=command.input_tokens,
            cached_input_tokens=command.cached_input_tokens,
            output_tokens=command.output_tokens,
        )
        cost = accountant.price_usage(usage)
        return [
            f"Estimated cost for {command.provider}/{command.model}: ${cost:.6f} "
            f"(input={command.input_tokens} cached={command.cached_input_tokens} "
            f"output={command.output_tokens})",
        ]


def _effective_options(settings: Settings, command: SyncRunCommand) -> SyncOptions:
    options = settings.sync.to_options()
    overrides = {
        "concurrency": command.concurrency,
        "batch_size": command.batch_size,
        "deadline_seconds": command.deadline_seconds,
        "only_new": command.only_new,
        "generate_embeddings": command.generate_embeddings,
        "classify_products": command.classify_products,
        "generate_descriptions": command.generate_descriptions,
        "upload_images": command.upload_images,
    }
    return replace(options, **{key: value for key, value in overrides.items() if value is not None})


def _build_adapter(
    settings: Settings,
    command: SyncRunCommand,
    stack: ExitStack,
) -> PlatformAdapter:
    if command.adapter == "shopify":
        adapter = ShopifyAdapter(
            shop_domain=settings.shopify.shop_domain,
            access_token=settings.shopify.access_token,
            api_version=settings.shopify.api_version,
            page_size=settings.shopify.page_size,
        )
        stack.callback(adapter.close)
        return adapter
    if command.catalog_file is None:
        raise ValueError(CATALOG_FILE_REQUIRED)
    return JsonFileAdapter(command.catalog_file)


def _build_provider(settings: Settings, stack: ExitStack) -> AiProvider:
    if settings.ai.provider == "openai":
        provider = OpenAiProvider(
            api_key=settings.ai.api_key,
            base_url=settings.ai.base_url,
            chat_model=settings.ai.chat_model,
            embedding_model=settings.ai.embedding_model,
            timeout_seconds=settings.ai.request_timeout_seconds,
        )
        stack.callback(provider.close)
        return provider
    return OfflineProvider()


def _build_broadcaster(settings: Settings, stack: ExitStack) -> ProgressBroadcaster:
    if settings.progress_webhook_url:
        broadcaster = WebhookBroadcaster(settings.progress_webhook_url)
        stack.callback(broadcaster.close)
        return broadcaster
    return LoggingBroadcaster()


def _summary_lines(summary: SyncRunSummary, *, show_errors: int) -> list[str]:
    lines = [
        "Sync run finished: "
        f"run_id={summary.run_id} store={summary.store_id} status={summary.status.value} "
        f"processed={summary.processed_count}/{summary.total} "
        f"errors={summary.error_count} cancelled={summary.cancelled_count} "
        f"skipped={summary.skipped_count}",
        f"Cost: ${summary.cost_usd:.6f}",
    ]
    for provider, cost in sorted(summary.cost_by_provider.items()):
        lines.append(f"- {provider}: ${cost:.6f}")
    if summary.error:
        lines.append(f"Run error: {summary.error}")
    if summary.errors and show_errors > 0:
        lines.append("Item errors:")
        for error in summary.errors[:show_errors]:
            lines.append(f"- {error.item_id} [{error.stage.value}] {error.message}")
        hidden = len(summary.errors) - show_errors
        if hidden > 0:
            lines.append(f"... and {hidden} more")
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[SQLiteCatalogRepository]:
    repository = SQLiteCatalogRepository(
        settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()
