"""Price cache refresh job.

Pulls live prices for active store products through the provider adapter and
upserts them into the price cache with a fresh TTL. Quoting never calls this;
it runs from the CLI (or a scheduler wrapping it).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .price_cache import CacheStatus, PriceEntry, lookup, region_bucket
from .providers import PricingProvider, ProviderError, to_cache_entry
from .store_mapping import StoreProduct
from .stores import PriceCacheStore

logger = logging.getLogger(__name__)


class WritablePriceCacheStore(PriceCacheStore, Protocol):
    async def save(self, entries: Iterable[PriceEntry]) -> int:
        ...


@dataclass
class RefreshSummary:
    total: int = 0
    refreshed: int = 0
    skipped_fresh: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "refreshed": self.refreshed,
            "skippedFresh": self.skipped_fresh,
            "failed": self.failed,
            "failures": list(self.failures),
        }


async def refresh_prices(
    products: Sequence[StoreProduct],
    provider: PricingProvider,
    price_store: WritablePriceCacheStore,
    *,
    postcode: Optional[str] = None,
    ttl_hours: int = 24,
    force: bool = False,
    now: Optional[datetime] = None,
) -> RefreshSummary:
    """Fetch and store prices for ``products`` in the postcode's region bucket.

    Rows that are still fresh are left alone unless ``force`` is set. A
    provider failure only skips that product; everything fetched successfully
    is saved in one batch at the end.
    """
    bucket = region_bucket(postcode)
    now = now or datetime.now(timezone.utc)
    summary = RefreshSummary(total=len(products))

    existing: Dict[str, PriceEntry] = {}
    if not force and products:
        existing = await price_store.load_prices([p.id for p in products], bucket)

    entries: List[PriceEntry] = []
    for product in products:
        if not force and lookup(existing, product.id, now).status is CacheStatus.FRESH:
            summary.skipped_fresh += 1
            continue
        try:
            # the provider client is blocking httpx with retry sleeps
            fetched = await asyncio.to_thread(
                provider.fetch_price, product.store, product.provider_product_id, postcode
            )
        except ProviderError as exc:
            logger.warning(
                "Price refresh failed store=%s product=%s: %s", product.store, product.id, exc
            )
            summary.failed += 1
            summary.failures.append(product.id)
            continue
        entries.append(to_cache_entry(product.id, fetched, bucket, ttl_hours))

    if entries:
        summary.refreshed = await price_store.save(entries)
    logger.info(
        "Price refresh bucket=%s total=%d refreshed=%d skipped_fresh=%d failed=%d",
        bucket,
        summary.total,
        summary.refreshed,
        summary.skipped_fresh,
        summary.failed,
    )
    return summary
