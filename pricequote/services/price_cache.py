from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional

GLOBAL_BUCKET = "GLOBAL"


class CacheStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class PriceEntry:
    store_product_id: str
    region_bucket: str
    price: float
    fetched_at: datetime
    ttl_expires_at: datetime
    currency: str = "GBP"
    unit_price: Optional[float] = None
    promo_text: Optional[str] = None
    in_stock: Optional[bool] = None

    def is_fresh(self, now: datetime) -> bool:
        return ensure_utc(now) < ensure_utc(self.ttl_expires_at)


@dataclass(frozen=True)
class CacheResult:
    status: CacheStatus
    entry: Optional[PriceEntry] = None


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def postcode_area(postcode: Optional[str]) -> Optional[str]:
    """Outward part of a postcode ("sw1a 1aa" -> "SW1A"), or None when absent."""
    if not postcode:
        return None
    trimmed = postcode.strip().upper()
    if not trimmed:
        return None
    return trimmed.split()[0]


def region_bucket(postcode: Optional[str]) -> str:
    return postcode_area(postcode) or GLOBAL_BUCKET


def lookup(
    entries: Mapping[str, PriceEntry],
    store_product_id: str,
    now: datetime,
) -> CacheResult:
    """Classify the cached price of a product; stale entries stay usable."""
    entry = entries.get(store_product_id)
    if entry is None:
        return CacheResult(CacheStatus.MISSING)
    if entry.is_fresh(now):
        return CacheResult(CacheStatus.FRESH, entry)
    return CacheResult(CacheStatus.STALE, entry)
