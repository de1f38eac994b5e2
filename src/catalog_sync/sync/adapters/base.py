"""Platform adapter contracts."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from catalog_sync.sync.models import ProductDraft, SourceItem


class PlatformAdapter(Protocol):
    """Interface for commerce platform catalogs."""

    name: str

    def list_items(self) -> Iterable[SourceItem]:
        """Return every product of the store in platform-native form."""
        raise NotImplementedError

    def transform(self, item: SourceItem) -> ProductDraft:
        """Map one platform-native product to a platform-neutral draft."""
        raise NotImplementedError
