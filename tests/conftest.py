from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from pricequote.services.catalog import CanonicalCatalog, CanonicalItem
from pricequote.services.price_cache import PriceEntry
from pricequote.services.store_mapping import StoreMapping, StoreProduct
from pricequote.services.units import UnitType

NOW = datetime(2025, 1, 12, 12, 0, tzinfo=timezone.utc)

SPAGHETTI = CanonicalItem("c-spaghetti", "spaghetti", UnitType.GRAM, aliases=("Dried Spaghetti",))
EGGS = CanonicalItem("c-eggs", "eggs", UnitType.COUNT, aliases=("egg", "free range eggs"))
MILK = CanonicalItem("c-milk", "milk", UnitType.ML, aliases=("whole milk",))
FLOUR = CanonicalItem("c-flour", "plain flour", UnitType.GRAM, aliases=("flour",))


def product(pid: str, store: str, size: float, unit: UnitType, *, active: bool = True) -> StoreProduct:
    return StoreProduct(
        id=pid,
        store=store,
        provider_product_id=f"https://{store}.example/{pid}",
        title=f"{store} {pid}",
        pack_size_value=size,
        pack_size_unit=unit,
        product_url=f"https://{store}.example/{pid}",
        active=active,
    )


def price(pid: str, amount: float, *, stale: bool = False, unit_price: float | None = None,
          fetched_at: datetime | None = None, bucket: str = "GLOBAL") -> PriceEntry:
    fetched = fetched_at or NOW - timedelta(hours=1)
    expires = NOW - timedelta(minutes=1) if stale else NOW + timedelta(hours=23)
    return PriceEntry(
        store_product_id=pid,
        region_bucket=bucket,
        price=amount,
        unit_price=unit_price,
        fetched_at=fetched,
        ttl_expires_at=expires,
    )


def tesco_mappings() -> List[StoreMapping]:
    return [
        StoreMapping("c-spaghetti", 10, product("t-spaghetti", "tesco", 500, UnitType.GRAM), sequence=1),
        StoreMapping("c-eggs", 10, product("t-eggs", "tesco", 6, UnitType.COUNT), sequence=2),
        StoreMapping("c-milk", 10, product("t-milk", "tesco", 1000, UnitType.ML), sequence=3),
        StoreMapping("c-flour", 10, product("t-flour", "tesco", 1500, UnitType.GRAM), sequence=4),
    ]


def tesco_prices() -> Dict[str, PriceEntry]:
    return {
        "t-spaghetti": price("t-spaghetti", 0.85),
        "t-eggs": price("t-eggs", 2.40),
        "t-milk": price("t-milk", 1.25),
        "t-flour": price("t-flour", 1.10),
    }


@pytest.fixture
def catalog() -> CanonicalCatalog:
    return CanonicalCatalog.build([SPAGHETTI, EGGS, MILK, FLOUR])


@pytest.fixture
def now() -> datetime:
    return NOW
