from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from ..observability import CATALOG_UNIT_MISMATCHES
from .catalog import NO_STORE_MAPPING, UNIT_MISMATCH, CanonicalItem, Unresolved
from .units import UnitType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreProduct:
    id: str
    store: str
    provider_product_id: str
    title: str
    pack_size_value: float
    pack_size_unit: UnitType
    product_url: Optional[str] = None
    image_url: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class StoreMapping:
    canonical_item_id: str
    priority: int
    product: StoreProduct
    sequence: int = 0


@dataclass
class StoreMappingIndex:
    """Winning store product per canonical item for a single store."""

    store: str
    winners: Dict[str, StoreMapping] = field(default_factory=dict)

    @classmethod
    def from_mappings(cls, store: str, mappings: Iterable[StoreMapping]) -> "StoreMappingIndex":
        index = cls(store=store)
        ordered: List[StoreMapping] = sorted(mappings, key=lambda m: m.sequence)
        for mapping in ordered:
            product = mapping.product
            if product.store != store or not product.active:
                continue
            current = index.winners.get(mapping.canonical_item_id)
            # strict comparison: the earliest row wins a priority tie
            if current is None or mapping.priority > current.priority:
                index.winners[mapping.canonical_item_id] = mapping
        return index

    @property
    def product_ids(self) -> List[str]:
        return [mapping.product.id for mapping in self.winners.values()]


def resolve_for_store(
    item: CanonicalItem,
    store: str,
    index: StoreMappingIndex,
) -> Union[StoreProduct, Unresolved]:
    if index.store != store:
        raise ValueError(f"Mapping index is for store {index.store!r}, not {store!r}")
    mapping = index.winners.get(item.id)
    if mapping is None:
        return Unresolved(reason=NO_STORE_MAPPING)
    product = mapping.product
    if product.pack_size_unit != item.unit_type:
        logger.error(
            "Catalog integrity: %s (%s) maps to %s product %s packed in %s",
            item.name,
            item.unit_type.value,
            store,
            product.id,
            product.pack_size_unit.value,
        )
        CATALOG_UNIT_MISMATCHES.labels(store=store).inc()
        return Unresolved(reason=UNIT_MISMATCH)
    return product
