"""Shopify Admin GraphQL catalog adapter."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

import httpx

from catalog_sync.sync.adapters.text import (
    extract_numeric_id,
    html_to_text,
    parse_price,
    split_tags,
)
from catalog_sync.sync.errors import AdapterError, ErrorKind
from catalog_sync.sync.models import ProductDraft, ProductVariant, SourceItem

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-10"
DEFAULT_PAGE_SIZE = 50
DEFAULT_TIMEOUT_SECONDS = 30.0

LIST_PRODUCTS_QUERY = """
query ListProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    pageInfo {
      hasNextPage
      endCursor
    }
    edges {
      node {
        id
        title
        handle
        descriptionHtml
        vendor
        productType
        status
        tags
        images(first: 10) {
          edges { node { url } }
        }
        variants(first: 100) {
          edges {
            node {
              id
              title
              sku
              price
              compareAtPrice
              availableForSale
              selectedOptions { name value }
            }
          }
        }
        collections(first: 10) {
          edges { node { title } }
        }
      }
    }
  }
}
"""


class ShopifyAdapter:
    """Page through ``products`` with cursor pagination and normalize each node."""

    name = "shopify"

    def __init__(
        self,
        *,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        if not shop_domain or not access_token:
            raise ValueError("shop_domain and access_token are required")
        self.endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self.page_size = page_size
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
        )

    def list_items(self) -> list[SourceItem]:
        items = [
            SourceItem(source_id=extract_numeric_id(node.get("id")), payload=node)
            for node in self._iter_nodes()
        ]
        logger.info("Fetched %d products from %s", len(items), self.endpoint)
        return items

    def transform(self, item: SourceItem) -> ProductDraft:
        node = item.payload
        title = str(node.get("title") or "").strip()
        if not title:
            raise AdapterError(
                message=f"Product {item.source_id} has no title",
                code="missing_title",
                kind=ErrorKind.INVALID,
            )
        variants = [_variant(edge_node) for edge_node in _edge_nodes(node.get("variants"))]
        return ProductDraft(
            source_id=item.source_id,
            title=title,
            description=html_to_text(node.get("descriptionHtml")),
            handle=str(node.get("handle") or ""),
            vendor=str(node.get("vendor") or ""),
            product_type=str(node.get("productType") or ""),
            sku=next((variant.sku for variant in variants if variant.sku), ""),
            tags=split_tags(node.get("tags")),
            collections=[
                str(collection.get("title"))
                for collection in _edge_nodes(node.get("collections"))
                if collection.get("title")
            ],
            image_urls=[
                str(image.get("url")) for image in _edge_nodes(node.get("images")) if image.get("url")
            ],
            variants=variants,
        )

    def close(self) -> None:
        self._client.close()

    def _iter_nodes(self) -> Iterator[Mapping[str, Any]]:
        cursor: str | None = None
        while True:
            data = self._query(LIST_PRODUCTS_QUERY, {"first": self.page_size, "after": cursor})
            products = data.get("products") or {}
            for node in _edge_nodes(products):
                yield node
            page_info = products.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                return

    def _query(self, query: str, variables: Mapping[str, Any]) -> Mapping[str, Any]:
        response = self._client.post(self.endpoint, json={"query": query, "variables": dict(variables)})
        response.raise_for_status()
        body = response.json()
        errors = body.get("errors") or []
        if errors:
            message = "; ".join(str(error.get("message", error)) for error in errors)
            throttled = any(
                (error.get("extensions") or {}).get("code") == "THROTTLED" for error in errors
            )
            raise AdapterError(
                message=f"Shopify GraphQL error: {message}",
                code="shopify_graphql_error",
                kind=ErrorKind.RATE_LIMITED if throttled else ErrorKind.INVALID,
            )
        return body.get("data") or {}


def _edge_nodes(connection: Any) -> list[Mapping[str, Any]]:
    if not isinstance(connection, Mapping):
        return []
    return [
        edge["node"]
        for edge in connection.get("edges") or []
        if isinstance(edge, Mapping) and isinstance(edge.get("node"), Mapping)
    ]


def _variant(node: Mapping[str, Any]) -> ProductVariant:
    color = ""
    size = ""
    for option in node.get("selectedOptions") or []:
        name = str(option.get("name", "")).lower()
        if name in {"color", "colour"}:
            color = str(option.get("value", ""))
        elif name == "size":
            size = str(option.get("value", ""))
    return ProductVariant(
        variant_id=extract_numeric_id(node.get("id")),
        title=str(node.get("title") or ""),
        sku=str(node.get("sku") or ""),
        price=parse_price(node.get("price")),
        compare_at_price=parse_price(node.get("compareAtPrice")),
        available=node.get("availableForSale") is not False,
        color=color,
        size=size,
    )
