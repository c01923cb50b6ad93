"""
Identity index over the destination catalog.

Maps (namespace, value) to every destination item carrying that external
identifier. Built fresh for each run and read-only afterwards.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from mediamirror.sync.models import DestinationItem, IdNamespace, normalize_id
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)

IndexKey = Tuple[IdNamespace, str]


class IdentityIndex:
    """One-to-many index from external identifiers to destination items."""

    def __init__(self):
        self._entries: Dict[IndexKey, List[DestinationItem]] = {}
        self._item_count = 0

    @classmethod
    def build(cls, items: Iterable[DestinationItem]) -> "IdentityIndex":
        """
        Build an index from a destination listing.

        Args:
            items: Destination items, in listing order

        Returns:
            Populated IdentityIndex
        """
        index = cls()
        for item in items:
            index._add(item)

        logger.info(
            "Built identity index",
            items=index._item_count,
            keys=len(index._entries)
        )
        return index

    def _add(self, item: DestinationItem) -> None:
        self._item_count += 1
        for namespace, value in item.external_ids.pairs():
            bucket = self._entries.setdefault((namespace, value), [])
            if all(existing.id != item.id for existing in bucket):
                bucket.append(item)

    def lookup(self, namespace: IdNamespace, value: Optional[str]) -> List[DestinationItem]:
        """Return destination items carrying the identifier, in insertion order."""
        key_value = normalize_id(namespace, value)
        if key_value is None:
            return []
        return list(self._entries.get((namespace, key_value), ()))

    @property
    def item_count(self) -> int:
        return self._item_count

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: IndexKey) -> bool:
        namespace, value = key
        return bool(self.lookup(namespace, value))
