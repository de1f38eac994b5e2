"""Commerce platform adapters."""

from catalog_sync.sync.adapters.base import PlatformAdapter
from catalog_sync.sync.adapters.json_file import JsonFileAdapter
from catalog_sync.sync.adapters.shopify import ShopifyAdapter

__all__ = [
    "JsonFileAdapter",
    "PlatformAdapter",
    "ShopifyAdapter",
]
