from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional

from ..observability import MISSING_ITEMS, STALE_PRICES
from ..schemas import LineItem, MissingItemSchema, PackSize, Quantity, StoreQuote
from .aggregator import Aggregation
from .catalog import NO_CACHED_PRICE, MissingItem, Unresolved
from .price_cache import CacheStatus, PriceEntry, ensure_utc, lookup
from .store_mapping import StoreMappingIndex, resolve_for_store

logger = logging.getLogger(__name__)

DEFAULT_MISSING_RATIO_WARNING = 0.2
PACK_TOLERANCE = 1e-9
MISSING_WARNING = "Some items are missing. Prices may be incomplete."
STALE_WARNING = "Some prices are stale. Refresh prices for the latest data."


def ceil_packs(required: float, pack_size: float) -> int:
    """Whole packs needed to cover ``required``; a partial pack is still a pack."""
    if pack_size <= 0 or required <= 0:
        return 0
    ratio = required / pack_size
    # relative tolerance absorbs float noise from summed quantities (0.1 + 0.2 of a 0.3 pack)
    return max(1, math.ceil(ratio - PACK_TOLERANCE * max(1.0, ratio)))


@dataclass
class QuotedLine:
    canonical_item_id: str
    canonical_name: str
    unit: str
    required: float
    product_id: str
    product_title: str
    pack_size: float
    packs_needed: int
    price: float
    unit_price: Optional[float]
    line_total: float
    consumed_estimate: float
    entry: PriceEntry
    stale: bool
    product_url: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class StoreQuoteResult:
    """Unrounded quote for one store; rounding happens in ``to_schema``."""

    store: str
    now: datetime
    lines: List[QuotedLine] = field(default_factory=list)
    missing: List[MissingItem] = field(default_factory=list)
    total_requested: int = 0
    stale_count: int = 0
    missing_ratio_warning: float = DEFAULT_MISSING_RATIO_WARNING
    error: Optional[str] = None
    extra_warnings: List[str] = field(default_factory=list)

    @property
    def basket_total(self) -> float:
        return sum(line.line_total for line in self.lines)

    @property
    def consumed_estimate(self) -> float:
        return sum(line.consumed_estimate for line in self.lines)

    @property
    def last_updated(self) -> datetime:
        if not self.lines:
            return ensure_utc(self.now)
        return max(ensure_utc(line.entry.fetched_at) for line in self.lines)

    @property
    def warnings(self) -> List[str]:
        warnings: List[str] = []
        if self.total_requested:
            missing_ratio = len(self.missing) / self.total_requested
            if missing_ratio > self.missing_ratio_warning:
                warnings.append(MISSING_WARNING)
        if self.stale_count > 0:
            warnings.append(STALE_WARNING)
        warnings.extend(self.extra_warnings)
        return warnings

    def to_schema(self) -> StoreQuote:
        return StoreQuote(
            store=self.store,
            basketTotal=_money(self.basket_total),
            consumedEstimate=_money(self.consumed_estimate),
            lastUpdated=self.last_updated,
            lineItems=[_line_schema(line) for line in self.lines],
            missingItems=[
                MissingItemSchema(ingredientName=m.ingredient_name, reason=m.reason)
                for m in self.missing
            ],
            missingCount=len(self.missing),
            warnings=self.warnings,
            error=self.error,
        )


def quote_store(
    store: str,
    aggregation: Aggregation,
    index: StoreMappingIndex,
    prices: Mapping[str, PriceEntry],
    now: datetime,
    *,
    missing_ratio_warning: float = DEFAULT_MISSING_RATIO_WARNING,
) -> StoreQuoteResult:
    """Price every aggregated requirement at one store.

    Per-item problems never raise: they become missing items. Requirements
    that could not be resolved during aggregation are carried over first.
    """
    result = StoreQuoteResult(
        store=store,
        now=now,
        missing=list(aggregation.missing),
        total_requested=aggregation.total_requested,
        missing_ratio_warning=missing_ratio_warning,
    )

    for requirement in aggregation.requirements.values():
        item = requirement.item
        product = resolve_for_store(item, store, index)
        if isinstance(product, Unresolved):
            result.missing.append(MissingItem(item.name, product.reason))
            continue

        cached = lookup(prices, product.id, now)
        if cached.status is CacheStatus.MISSING or cached.entry is None:
            result.missing.append(MissingItem(item.name, NO_CACHED_PRICE))
            continue
        entry = cached.entry
        stale = cached.status is CacheStatus.STALE
        if stale:
            result.stale_count += 1

        pack_size = float(product.pack_size_value)
        packs_needed = ceil_packs(requirement.value, pack_size)
        price = float(entry.price)
        line_total = packs_needed * price
        if entry.unit_price is not None:
            unit_price: Optional[float] = float(entry.unit_price)
        else:
            unit_price = price / pack_size if pack_size > 0 else None
        consumed = requirement.value * unit_price if unit_price is not None else line_total

        result.lines.append(
            QuotedLine(
                canonical_item_id=item.id,
                canonical_name=item.name,
                unit=item.unit_type.value,
                required=requirement.value,
                product_id=product.id,
                product_title=product.title,
                pack_size=pack_size,
                packs_needed=packs_needed,
                price=price,
                unit_price=unit_price,
                line_total=line_total,
                consumed_estimate=consumed,
                entry=entry,
                stale=stale,
                product_url=product.product_url,
                image_url=product.image_url,
            )
        )

    for missing in result.missing:
        MISSING_ITEMS.labels(reason=missing.reason).inc()
    if result.stale_count:
        STALE_PRICES.labels(store=store).inc(result.stale_count)
    logger.info(
        "Quoted store=%s lines=%d missing=%d stale=%d",
        store,
        len(result.lines),
        len(result.missing),
        result.stale_count,
    )
    return result


def _money(value: float) -> float:
    return round(value, 2)


def _line_schema(line: QuotedLine) -> LineItem:
    return LineItem(
        canonicalItemId=line.canonical_item_id,
        canonicalName=line.canonical_name,
        storeProductId=line.product_id,
        productTitle=line.product_title,
        packSize=PackSize(value=line.pack_size, unit=line.unit),
        required=Quantity(value=line.required, unit=line.unit),
        packsNeeded=line.packs_needed,
        price=_money(line.price),
        unitPrice=round(line.unit_price, 4) if line.unit_price is not None else None,
        lineTotal=_money(line.line_total),
        consumedEstimate=_money(line.consumed_estimate),
        currency=line.entry.currency,
        promoText=line.entry.promo_text,
        inStock=line.entry.in_stock,
        productUrl=line.product_url,
        imageUrl=line.image_url,
        priceSource="stale" if line.stale else "cached",
        fetchedAt=ensure_utc(line.entry.fetched_at),
    )
