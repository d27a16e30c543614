from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog.contextvars import bound_contextvars

from ..config import Settings, get_settings
from ..errors import QuoteDeadlineExceeded
from ..observability import QUOTE_LOG_FAILURES, STORE_QUOTE_FAILURES
from ..schemas import MenuQuoteRequest, QuoteMeta, QuoteRequest, QuoteResponse
from .aggregator import Aggregation, aggregate, aggregate_request_items
from .catalog import STORE_UNAVAILABLE, CanonicalCatalog, MissingItem
from .price_cache import postcode_area, region_bucket
from .quote_log import NullQuoteLogSink, QuoteLogSink, SqlQuoteLogSink
from .quoter import StoreQuoteResult, quote_store
from .recipe_cache import RecipeCache, build_menu_basket
from .store_mapping import StoreMappingIndex
from .stores import (
    CatalogStore,
    MemoryCatalogStore,
    MemoryPriceCacheStore,
    PriceCacheStore,
    RedisPriceCacheStore,
    SqlCatalogStore,
    SqlPriceCacheStore,
    load_seed_file,
)

logger = logging.getLogger(__name__)

STORE_UNAVAILABLE_WARNING = "Prices are unavailable for this store right now."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuoteService:
    """Aggregates a basket once and quotes it at every requested store concurrently."""

    def __init__(
        self,
        catalog_store: CatalogStore,
        price_store: PriceCacheStore,
        log_sink: Optional[QuoteLogSink] = None,
        *,
        recipe_cache: Optional[RecipeCache] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.catalog_store = catalog_store
        self.price_store = price_store
        self.log_sink = log_sink or NullQuoteLogSink()
        self.recipe_cache = recipe_cache or RecipeCache()
        self.settings = settings or get_settings()
        self._clock = clock
        self._pending_logs: Set[asyncio.Task] = set()

    async def quote(self, request: QuoteRequest) -> QuoteResponse:
        with bound_contextvars(quote_id=uuid.uuid4().hex, quote_kind="items"):
            response = await self._within_deadline(self._quote_items(request), request.stores)
            self._schedule_log(request.model_dump(mode="json"), request.postcode, response)
            return response

    async def quote_menu(self, request: MenuQuoteRequest) -> QuoteResponse:
        with bound_contextvars(quote_id=uuid.uuid4().hex, quote_kind="menu"):
            if request.recipes:
                self.recipe_cache.populate(request.recipes)
            response = await self._within_deadline(self._quote_menu(request), request.stores)
            payload = request.model_dump(mode="json", exclude={"recipes"})
            payload["recipeIds"] = [recipe.id for recipe in request.recipes]
            self._schedule_log(payload, request.postcode, response)
            return response

    async def drain(self) -> None:
        """Wait for in-flight audit log writes."""
        if self._pending_logs:
            await asyncio.gather(*list(self._pending_logs), return_exceptions=True)

    async def _within_deadline(
        self,
        work: Awaitable[QuoteResponse],
        stores: Sequence[str],
    ) -> QuoteResponse:
        """One deadline covers recipe lookup, catalog load, aggregation and the store fan-out."""
        deadline = self.settings.quote_deadline_seconds
        try:
            return await asyncio.wait_for(work, timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.error("Quote deadline of %.1fs exceeded for stores=%s", deadline, list(stores))
            raise QuoteDeadlineExceeded(f"Quote did not complete within {deadline}s") from exc

    async def _quote_items(self, request: QuoteRequest) -> QuoteResponse:
        catalog = await self._load_catalog()
        aggregation = aggregate_request_items(request.items, catalog)
        return await self._quote_stores(request.stores, request.postcode, aggregation)

    async def _quote_menu(self, request: MenuQuoteRequest) -> QuoteResponse:
        basket = await build_menu_basket(request.menu, self.recipe_cache)
        catalog = await self._load_catalog()
        aggregation = aggregate(basket, catalog)
        return await self._quote_stores(request.stores, request.postcode, aggregation)

    async def _load_catalog(self) -> CanonicalCatalog:
        items = await self.catalog_store.load_canonical_items()
        return CanonicalCatalog.build(items)

    async def _quote_stores(
        self,
        stores: Sequence[str],
        postcode: Optional[str],
        aggregation: Aggregation,
    ) -> QuoteResponse:
        now = self._clock()
        bucket = region_bucket(postcode)
        unique_stores = list(dict.fromkeys(s.strip() for s in stores if s and s.strip()))
        semaphore = asyncio.Semaphore(self.settings.quote_max_concurrency)

        results: List[StoreQuoteResult] = await asyncio.gather(
            *(
                self._quote_one_store(store, aggregation, bucket, now, semaphore)
                for store in unique_stores
            )
        )

        return QuoteResponse(
            currency=self.settings.quote_currency,
            quotes=[result.to_schema() for result in results],
            meta=QuoteMeta(
                postcodeArea=postcode_area(postcode),
                ttlHours=self.settings.quote_ttl_hours,
            ),
        )

    async def _quote_one_store(
        self,
        store: str,
        aggregation: Aggregation,
        bucket: str,
        now: datetime,
        semaphore: asyncio.Semaphore,
    ) -> StoreQuoteResult:
        async with semaphore:
            try:
                index = StoreMappingIndex(store=store)
                prices: Dict[str, Any] = {}
                if aggregation.requirements:
                    mappings = await self.catalog_store.load_store_mappings(
                        store, list(aggregation.requirements)
                    )
                    index = StoreMappingIndex.from_mappings(store, mappings)
                if index.product_ids:
                    prices = await self.price_store.load_prices(index.product_ids, bucket)
            except Exception:
                # isolate backing-store failures to this store's quote
                logger.exception("Quote failed for store=%s", store)
                STORE_QUOTE_FAILURES.labels(store=store).inc()
                return self._unavailable(store, aggregation, now)

        return quote_store(
            store,
            aggregation,
            index,
            prices,
            now,
            missing_ratio_warning=self.settings.quote_missing_ratio_warning,
        )

    def _unavailable(self, store: str, aggregation: Aggregation, now: datetime) -> StoreQuoteResult:
        missing = list(aggregation.missing) + [
            MissingItem(req.item.name, STORE_UNAVAILABLE)
            for req in aggregation.requirements.values()
        ]
        return StoreQuoteResult(
            store=store,
            now=now,
            missing=missing,
            total_requested=aggregation.total_requested,
            missing_ratio_warning=self.settings.quote_missing_ratio_warning,
            error=STORE_UNAVAILABLE,
            extra_warnings=[STORE_UNAVAILABLE_WARNING],
        )

    def _schedule_log(
        self,
        request_payload: Dict[str, Any],
        postcode: Optional[str],
        response: QuoteResponse,
    ) -> None:
        """Fire-and-forget audit write so the response is never blocked by logging."""
        if not self.settings.quote_log_enabled:
            return
        # only the postcode area is persisted
        request_payload["postcode"] = postcode_area(postcode)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Cannot schedule quote log write; no running loop")
            return
        task = loop.create_task(self._record_log(request_payload, response.model_dump(mode="json")))
        self._pending_logs.add(task)
        task.add_done_callback(self._pending_logs.discard)

    async def _record_log(self, request_payload: Dict[str, Any], response_payload: Dict[str, Any]) -> None:
        try:
            await self.log_sink.record(request_payload, response_payload)
        except Exception:
            QUOTE_LOG_FAILURES.inc()
            logger.exception("Quote log insert failed")


def build_quote_service(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]],
    redis_client: Any = None,
) -> QuoteService:
    """Wire the engine to whatever backing stores the settings describe."""
    catalog_store: CatalogStore
    price_store: PriceCacheStore
    log_sink: QuoteLogSink = NullQuoteLogSink()

    if session_factory is not None:
        catalog_store = SqlCatalogStore(session_factory)
        price_store = SqlPriceCacheStore(session_factory)
        if settings.quote_log_enabled:
            log_sink = SqlQuoteLogSink(session_factory)
    elif settings.catalog_path:
        catalog_store, price_store = load_seed_file(settings.catalog_path)
    else:
        logger.warning("No database or catalog seed configured; using an empty catalog")
        catalog_store, price_store = MemoryCatalogStore(), MemoryPriceCacheStore()

    if settings.price_cache_backend == "redis" and redis_client is not None:
        price_store = RedisPriceCacheStore(redis_client)

    return QuoteService(catalog_store, price_store, log_sink, settings=settings)
