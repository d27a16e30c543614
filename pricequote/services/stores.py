"""Read-side backing stores for the quote engine.

The engine only talks to the `CatalogStore` and `PriceCacheStore` interfaces.
SQL (SQLAlchemy asyncio), Redis and in-memory implementations live here; the
in-memory pair also backs the JSON seed file used in local development.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Protocol, Sequence, Tuple

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import BackingStoreError
from .. import models
from .catalog import CanonicalItem
from .price_cache import GLOBAL_BUCKET, PriceEntry, ensure_utc
from .store_mapping import StoreMapping, StoreProduct
from .units import UnitType

logger = logging.getLogger(__name__)

PRICE_KEY_PREFIX = "price"
DEFAULT_REFRESH_LIMIT = 50


class CatalogStore(Protocol):
    async def load_canonical_items(self) -> List[CanonicalItem]:
        ...

    async def load_store_mappings(
        self, store: str, canonical_ids: Sequence[str]
    ) -> List[StoreMapping]:
        ...

    async def load_active_products(
        self,
        stores: Sequence[str] = (),
        product_ids: Sequence[str] = (),
        limit: int = DEFAULT_REFRESH_LIMIT,
    ) -> List[StoreProduct]:
        ...


class PriceCacheStore(Protocol):
    async def load_prices(
        self, store_product_ids: Sequence[str], region_bucket: str
    ) -> Dict[str, PriceEntry]:
        ...


# --- SQL ---------------------------------------------------------------------


def _as_uuids(values: Iterable[str]) -> List[uuid.UUID]:
    result: List[uuid.UUID] = []
    for value in values:
        try:
            result.append(uuid.UUID(str(value)))
        except ValueError:
            logger.warning("Skipping non-UUID identifier %r", value)
    return result


def canonical_from_row(row: models.CanonicalItem) -> CanonicalItem:
    return CanonicalItem(
        id=str(row.id),
        name=row.name,
        unit_type=UnitType(row.unit_type),
        aliases=tuple(row.aliases or ()),
        category=row.category,
    )


def product_from_row(row: models.StoreProduct) -> StoreProduct:
    return StoreProduct(
        id=str(row.id),
        store=row.store,
        provider_product_id=row.provider_product_id,
        title=row.title,
        pack_size_value=float(row.pack_size_value),
        pack_size_unit=UnitType(row.pack_size_unit),
        product_url=row.product_url,
        image_url=row.image_url,
        active=bool(row.active),
    )


def price_from_row(row: models.PriceCache) -> PriceEntry:
    return PriceEntry(
        store_product_id=str(row.store_product_id),
        region_bucket=row.postcode_area or GLOBAL_BUCKET,
        price=float(row.price),
        unit_price=float(row.unit_price) if row.unit_price is not None else None,
        promo_text=row.promo_text,
        in_stock=row.in_stock,
        currency=row.currency,
        fetched_at=ensure_utc(row.fetched_at),
        ttl_expires_at=ensure_utc(row.ttl_expires_at),
    )


class SqlCatalogStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_canonical_items(self) -> List[CanonicalItem]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(models.CanonicalItem).order_by(models.CanonicalItem.name)
                    )
                ).scalars().all()
                return [canonical_from_row(row) for row in rows]
        except (SQLAlchemyError, ValueError) as exc:
            # ValueError: a row whose unit_type is not a known family
            raise BackingStoreError("Failed to load canonical items") from exc

    async def load_store_mappings(
        self, store: str, canonical_ids: Sequence[str]
    ) -> List[StoreMapping]:
        ids = _as_uuids(canonical_ids)
        if not ids:
            return []
        stmt = (
            select(models.CanonicalToStoreProduct, models.StoreProduct)
            .join(
                models.StoreProduct,
                models.StoreProduct.id == models.CanonicalToStoreProduct.store_product_id,
            )
            .where(
                models.CanonicalToStoreProduct.canonical_item_id.in_(ids),
                models.StoreProduct.store == store,
                models.StoreProduct.active.is_(True),
            )
            .order_by(models.CanonicalToStoreProduct.id)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
                return [
                    StoreMapping(
                        canonical_item_id=str(mapping.canonical_item_id),
                        priority=mapping.priority,
                        product=product_from_row(product),
                        sequence=mapping.id,
                    )
                    for mapping, product in rows
                ]
        except (SQLAlchemyError, ValueError) as exc:
            raise BackingStoreError(f"Failed to load store mappings for {store}") from exc

    async def load_active_products(
        self,
        stores: Sequence[str] = (),
        product_ids: Sequence[str] = (),
        limit: int = DEFAULT_REFRESH_LIMIT,
    ) -> List[StoreProduct]:
        """Active products to refresh, optionally narrowed by store and id."""
        stmt = select(models.StoreProduct).where(models.StoreProduct.active.is_(True))
        if stores:
            stmt = stmt.where(models.StoreProduct.store.in_(list(stores)))
        if product_ids:
            ids = _as_uuids(product_ids)
            if not ids:
                return []
            stmt = stmt.where(models.StoreProduct.id.in_(ids))
        stmt = stmt.order_by(models.StoreProduct.store, models.StoreProduct.title).limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [product_from_row(row) for row in rows]
        except (SQLAlchemyError, ValueError) as exc:
            raise BackingStoreError("Failed to load store products") from exc


class SqlPriceCacheStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_prices(
        self, store_product_ids: Sequence[str], region_bucket: str
    ) -> Dict[str, PriceEntry]:
        ids = _as_uuids(store_product_ids)
        if not ids:
            return {}
        stmt = select(models.PriceCache).where(
            models.PriceCache.store_product_id.in_(ids),
            models.PriceCache.postcode_area == region_bucket,
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return {str(row.store_product_id): price_from_row(row) for row in rows}
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            raise BackingStoreError("Failed to load price cache") from exc

    async def save(self, entries: Iterable[PriceEntry]) -> int:
        """Upsert cache rows; used by the price refresh job, never by quoting."""
        count = 0
        async with self._session_factory() as session:
            for entry in entries:
                await session.merge(
                    models.PriceCache(
                        store_product_id=uuid.UUID(entry.store_product_id),
                        postcode_area=entry.region_bucket,
                        price=entry.price,
                        unit_price=entry.unit_price,
                        promo_text=entry.promo_text,
                        in_stock=entry.in_stock,
                        currency=entry.currency,
                        fetched_at=entry.fetched_at,
                        ttl_expires_at=entry.ttl_expires_at,
                    )
                )
                count += 1
            try:
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
        return count


# --- Redis -------------------------------------------------------------------


def price_key(store_product_id: str, region_bucket: str) -> str:
    return f"{PRICE_KEY_PREFIX}:{store_product_id}:{region_bucket}"


def price_to_json(entry: PriceEntry) -> str:
    return json.dumps(
        {
            "storeProductId": entry.store_product_id,
            "postcodeArea": entry.region_bucket,
            "price": entry.price,
            "unitPrice": entry.unit_price,
            "promoText": entry.promo_text,
            "inStock": entry.in_stock,
            "currency": entry.currency,
            "fetchedAt": entry.fetched_at.isoformat(),
            "ttlExpiresAt": entry.ttl_expires_at.isoformat(),
        }
    )


def price_from_dict(data: Mapping[str, Any]) -> PriceEntry:
    unit_price = data.get("unitPrice")
    return PriceEntry(
        store_product_id=str(data["storeProductId"]),
        region_bucket=data.get("postcodeArea") or GLOBAL_BUCKET,
        price=float(data["price"]),
        unit_price=float(unit_price) if unit_price is not None else None,
        promo_text=data.get("promoText"),
        in_stock=data.get("inStock"),
        currency=data.get("currency") or "GBP",
        fetched_at=_parse_timestamp(data["fetchedAt"]),
        ttl_expires_at=_parse_timestamp(data["ttlExpiresAt"]),
    )


class RedisPriceCacheStore:
    """Price rows stored as JSON strings under ``price:{product}:{bucket}``.

    Keys carry no Redis TTL: expired rows must stay readable as stale prices.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    async def load_prices(
        self, store_product_ids: Sequence[str], region_bucket: str
    ) -> Dict[str, PriceEntry]:
        ids = list(dict.fromkeys(store_product_ids))
        if not ids:
            return {}
        keys = [price_key(pid, region_bucket) for pid in ids]
        try:
            raw_values = await self._client.mget(keys)
        except RedisError as exc:
            raise BackingStoreError("Failed to load price cache from Redis") from exc

        entries: Dict[str, PriceEntry] = {}
        for pid, raw in zip(ids, raw_values):
            if not raw:
                continue
            try:
                entries[pid] = price_from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding unreadable cached price for %s/%s", pid, region_bucket)
        return entries

    async def save(self, entries: Iterable[PriceEntry]) -> int:
        mapping = {
            price_key(entry.store_product_id, entry.region_bucket): price_to_json(entry)
            for entry in entries
        }
        if mapping:
            await self._client.mset(mapping)
        return len(mapping)


# --- In-memory / seed file ---------------------------------------------------


class MemoryCatalogStore:
    def __init__(
        self,
        items: Iterable[CanonicalItem] = (),
        mappings: Iterable[StoreMapping] = (),
        products: Iterable[StoreProduct] = (),
    ) -> None:
        self.items: List[CanonicalItem] = list(items)
        self.mappings: List[StoreMapping] = list(mappings)
        self.products: Dict[str, StoreProduct] = {p.id: p for p in products}
        for mapping in self.mappings:
            self.products.setdefault(mapping.product.id, mapping.product)

    async def load_canonical_items(self) -> List[CanonicalItem]:
        return list(self.items)

    async def load_store_mappings(
        self, store: str, canonical_ids: Sequence[str]
    ) -> List[StoreMapping]:
        wanted = set(canonical_ids)
        return [
            m
            for m in self.mappings
            if m.canonical_item_id in wanted and m.product.store == store and m.product.active
        ]

    async def load_active_products(
        self,
        stores: Sequence[str] = (),
        product_ids: Sequence[str] = (),
        limit: int = DEFAULT_REFRESH_LIMIT,
    ) -> List[StoreProduct]:
        wanted_stores = set(stores)
        wanted_ids = set(product_ids)
        matches = [
            p
            for p in self.products.values()
            if p.active
            and (not wanted_stores or p.store in wanted_stores)
            and (not wanted_ids or p.id in wanted_ids)
        ]
        matches.sort(key=lambda p: (p.store, p.title))
        return matches[:limit]


class MemoryPriceCacheStore:
    def __init__(self, entries: Iterable[PriceEntry] = ()) -> None:
        self.entries: Dict[Tuple[str, str], PriceEntry] = {}
        for entry in entries:
            self.entries[(entry.store_product_id, entry.region_bucket)] = entry

    async def load_prices(
        self, store_product_ids: Sequence[str], region_bucket: str
    ) -> Dict[str, PriceEntry]:
        result: Dict[str, PriceEntry] = {}
        for pid in store_product_ids:
            entry = self.entries.get((pid, region_bucket))
            if entry is not None:
                result[pid] = entry
        return result

    async def save(self, entries: Iterable[PriceEntry]) -> int:
        count = 0
        for entry in entries:
            self.entries[(entry.store_product_id, entry.region_bucket)] = entry
            count += 1
        return count


def load_seed_file(path: str | Path) -> Tuple[MemoryCatalogStore, MemoryPriceCacheStore]:
    """Build in-memory stores from a JSON seed (canonicalItems, storeProducts, mappings, prices)."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    items = [
        CanonicalItem(
            id=str(raw["id"]),
            name=raw["name"],
            unit_type=UnitType(raw["unitType"]),
            aliases=tuple(raw.get("aliases") or ()),
            category=raw.get("category"),
        )
        for raw in data.get("canonicalItems", [])
    ]
    products: Dict[str, StoreProduct] = {}
    for raw in data.get("storeProducts", []):
        pack = raw.get("packSize") or {}
        product = StoreProduct(
            id=str(raw["id"]),
            store=raw["store"],
            provider_product_id=raw.get("providerProductId") or str(raw["id"]),
            title=raw.get("title") or "",
            pack_size_value=float(pack.get("value", 0)),
            pack_size_unit=UnitType(pack.get("unit", UnitType.COUNT.value)),
            product_url=raw.get("productUrl"),
            image_url=raw.get("imageUrl"),
            active=bool(raw.get("active", True)),
        )
        products[product.id] = product

    mappings: List[StoreMapping] = []
    for position, raw in enumerate(data.get("mappings", [])):
        product = products.get(str(raw["storeProductId"]))
        if product is None:
            logger.warning("Seed mapping references unknown store product %s", raw["storeProductId"])
            continue
        mappings.append(
            StoreMapping(
                canonical_item_id=str(raw["canonicalItemId"]),
                priority=int(raw.get("priority", 0)),
                product=product,
                sequence=position,
            )
        )

    prices = [price_from_dict(raw) for raw in data.get("prices", [])]
    logger.info(
        "Loaded seed catalog path=%s items=%d products=%d mappings=%d prices=%d",
        path,
        len(items),
        len(products),
        len(mappings),
        len(prices),
    )
    return MemoryCatalogStore(items, mappings, products.values()), MemoryPriceCacheStore(prices)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
