"""CLI entrypoint for catalog-sync."""

import logging
from pathlib import Path

import rich_click as click

from catalog_sync import __version__
from catalog_sync.config import ADAPTERS
from catalog_sync.sync.controllers import (
    PricingEstimateCommand,
    SyncCliController,
    SyncHistoryCommand,
    SyncRunCommand,
    SyncShowCommand,
)
from catalog_sync.sync.errors import PricingNotFound

click.rich_click.USE_MARKDOWN = True
SYNC_CONTROLLER = SyncCliController()


@click.group()
@click.version_option(version=__version__, prog_name="catalog-sync")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for pipeline diagnostics.",
)
def catalog_sync(log_level: str) -> None:
    """Product catalog sync CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@catalog_sync.group()
def sync() -> None:
    """Catalog sync runs."""


@sync.command("run")
@click.argument("store_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--adapter",
    type=click.Choice(ADAPTERS),
    default="json",
    show_default=True,
    help="Commerce platform adapter.",
)
@click.option(
    "--catalog-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Product export for the `json` adapter.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Items enriched in parallel within a batch.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Items per batch.",
)
@click.option(
    "--deadline-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop claiming new items after this many seconds.",
)
@click.option("--only-new/--all-items", default=None, help="Skip products already stored.")
@click.option("--embeddings/--no-embeddings", "generate_embeddings", default=None)
@click.option("--classify/--no-classify", "classify_products", default=None)
@click.option("--descriptions/--no-descriptions", "generate_descriptions", default=None)
@click.option("--upload-images/--no-upload-images", default=None)
@click.option(
    "--show-errors",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="How many item errors to print.",
)
def sync_run(
    store_id: str,
    db_path: Path | None,
    adapter: str,
    catalog_file: Path | None,
    concurrency: int | None,
    batch_size: int | None,
    deadline_seconds: float | None,
    only_new: bool | None,
    generate_embeddings: bool | None,
    classify_products: bool | None,
    generate_descriptions: bool | None,
    upload_images: bool | None,
    show_errors: int,
) -> None:
    """Sync one store catalog: list, enrich and persist every product.

    Unset flags fall back to `CATALOG_SYNC_*` environment defaults.
    """

    try:
        result = SYNC_CONTROLLER.run_sync(
            SyncRunCommand(
                db_path=db_path,
                store_id=store_id,
                adapter=adapter,
                catalog_file=catalog_file,
                concurrency=concurrency,
                batch_size=batch_size,
                deadline_seconds=deadline_seconds,
                only_new=only_new,
                generate_embeddings=generate_embeddings,
                classify_products=classify_products,
                generate_descriptions=generate_descriptions,
                upload_images=upload_images,
                show_errors=show_errors,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Sync run failed.")


@sync.command("history")
@click.argument("store_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="Number of recent runs to show.",
)
def sync_history(store_id: str, db_path: Path | None, limit: int) -> None:
    """List recent runs for a store, newest first."""

    _emit_lines(
        SYNC_CONTROLLER.history(
            SyncHistoryCommand(
                db_path=db_path,
                store_id=store_id,
                limit=limit,
            ),
        ),
    )


@sync.command("show")
@click.argument("run_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--show-errors",
    type=click.IntRange(min=0),
    default=50,
    show_default=True,
    help="How many item errors to print.",
)
def sync_show(run_id: str, db_path: Path | None, show_errors: int) -> None:
    """Show the stored summary of one run."""

    try:
        lines = SYNC_CONTROLLER.show(
            SyncShowCommand(
                db_path=db_path,
                run_id=run_id,
                show_errors=show_errors,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@catalog_sync.group()
def pricing() -> None:
    """Model pricing table and cost estimates.

    Override rows with `CATALOG_SYNC_LLM_PRICING`.
    """


@pricing.command("show")
def pricing_show() -> None:
    """Print the effective pricing table."""

    _emit_lines(SYNC_CONTROLLER.pricing_table())


@pricing.command("estimate")
@click.argument("provider")
@click.argument("model")
@click.option("--input-tokens", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--cached-input-tokens", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--output-tokens", type=click.IntRange(min=0), default=0, show_default=True)
def pricing_estimate(
    provider: str,
    model: str,
    input_tokens: int,
    cached_input_tokens: int,
    output_tokens: int,
) -> None:
    """Price a token usage for one provider/model pair."""

    try:
        lines = SYNC_CONTROLLER.estimate(
            PricingEstimateCommand(
                provider=provider,
                model=model,
                input_tokens=input_tokens,
                cached_input_tokens=cached_input_tokens,
                output_tokens=output_tokens,
            ),
        )
    except PricingNotFound as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    catalog_sync()
