"""Catalog adapter backed by a local JSON export."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from catalog_sync.sync.adapters.text import html_to_text, parse_price, split_tags
from catalog_sync.sync.errors import AdapterError, ErrorKind
from catalog_sync.sync.models import ProductDraft, ProductVariant, SourceItem

logger = logging.getLogger(__name__)


class JsonFileAdapter:
    """Read products from a JSON file.

    The file holds either a list of product objects or an object with a
    ``products`` list. Field names follow the Shopify REST export
    (``body_html``, ``product_type``, ``images[].src``) and plain aliases
    (``description``, ``type``, ``image_urls``) are accepted too.
    """

    name = "json"

    def __init__(self, path: Path) -> None:
        self.path = path

    def list_items(self) -> list[SourceItem]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as error:
            raise AdapterError(
                message=f"Catalog file not found: {self.path}",
                code="catalog_file_missing",
                kind=ErrorKind.INVALID,
            ) from error
        except json.JSONDecodeError as error:
            raise AdapterError(
                message=f"Catalog file {self.path} is not valid JSON: {error}",
                code="catalog_file_invalid",
                kind=ErrorKind.INVALID,
            ) from error

        products = raw.get("products", []) if isinstance(raw, Mapping) else raw
        if not isinstance(products, list):
            raise AdapterError(
                message=f"Catalog file {self.path} must contain a product list",
                code="catalog_file_invalid",
                kind=ErrorKind.INVALID,
            )

        items: list[SourceItem] = []
        for position, product in enumerate(products):
            if not isinstance(product, Mapping):
                logger.warning("Skipping non-object product at position %d", position)
                continue
            source_id = str(product.get("id") or product.get("handle") or f"row-{position}")
            items.append(SourceItem(source_id=source_id, payload=dict(product)))
        logger.info("Loaded %d products from %s", len(items), self.path)
        return items

    def transform(self, item: SourceItem) -> ProductDraft:
        payload = item.payload
        title = str(payload.get("title") or "").strip()
        if not title:
            raise AdapterError(
                message=f"Product {item.source_id} has no title",
                code="missing_title",
                kind=ErrorKind.INVALID,
            )
        description = payload.get("description")
        if description is None:
            description = html_to_text(payload.get("body_html"))
        variants = [_variant(raw) for raw in payload.get("variants") or [] if isinstance(raw, Mapping)]
        return ProductDraft(
            source_id=item.source_id,
            title=title,
            description=str(description).strip(),
            handle=str(payload.get("handle") or ""),
            vendor=str(payload.get("vendor") or ""),
            product_type=str(payload.get("product_type") or payload.get("type") or ""),
            sku=next((variant.sku for variant in variants if variant.sku), ""),
            currency=str(payload.get("currency") or "USD"),
            tags=split_tags(payload.get("tags")),
            collections=split_tags(payload.get("collections")),
            image_urls=_image_urls(payload),
            variants=variants,
        )


def _image_urls(payload: Mapping[str, Any]) -> list[str]:
    urls = payload.get("image_urls")
    if isinstance(urls, list):
        return [str(url) for url in urls if url]
    images = payload.get("images") or []
    result: list[str] = []
    for image in images:
        if isinstance(image, Mapping):
            url = image.get("src") or image.get("url")
        else:
            url = image
        if url:
            result.append(str(url))
    return result


def _variant(raw: Mapping[str, Any]) -> ProductVariant:
    raw_options = raw.get("options")
    options: dict[str, str] = {}
    if isinstance(raw_options, Mapping):
        options = {str(key).lower(): str(value) for key, value in raw_options.items()}
    return ProductVariant(
        variant_id=str(raw.get("id") or ""),
        title=str(raw.get("title") or ""),
        sku=str(raw.get("sku") or ""),
        price=parse_price(raw.get("price")),
        compare_at_price=parse_price(raw.get("compare_at_price")),
        available=raw.get("available", True) is not False,
        color=str(raw.get("color") or options.get("color") or options.get("colour") or ""),
        size=str(raw.get("size") or options.get("size") or ""),
    )
