from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .units import UnitType

logger = logging.getLogger(__name__)

NO_CANONICAL_MATCH = "no_canonical_match"
UNIT_MISMATCH = "unit_mismatch"
NO_STORE_MAPPING = "no_store_mapping"
NO_CACHED_PRICE = "no_cached_price"
STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class CanonicalItem:
    id: str
    name: str
    unit_type: UnitType
    aliases: Tuple[str, ...] = ()
    category: Optional[str] = None


@dataclass(frozen=True)
class Unresolved:
    reason: str


@dataclass(frozen=True)
class MissingItem:
    ingredient_name: str
    reason: str


def normalize_key(value: str) -> str:
    return value.strip().lower()


@dataclass
class CanonicalCatalog:
    """Exact-match lookup of free-text ingredient names (and aliases) to canonical items."""

    items: List[CanonicalItem] = field(default_factory=list)
    _lookup: Dict[str, CanonicalItem] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, items: Iterable[CanonicalItem]) -> "CanonicalCatalog":
        catalog = cls()
        for item in items:
            catalog.register(item)
        return catalog

    def register(self, item: CanonicalItem) -> None:
        self.items.append(item)
        for raw in (item.name, *item.aliases):
            key = normalize_key(raw)
            if not key:
                continue
            existing = self._lookup.get(key)
            if existing is not None and existing.id != item.id:
                logger.error(
                    "Catalog key %r claimed by %s and %s; keeping %s",
                    key,
                    existing.name,
                    item.name,
                    existing.name,
                )
                continue
            self._lookup[key] = item

    def resolve(self, name: str) -> Union[CanonicalItem, Unresolved]:
        item = self._lookup.get(normalize_key(name or ""))
        if item is None:
            return Unresolved(reason=NO_CANONICAL_MATCH)
        return item

    def __len__(self) -> int:
        return len(self.items)
