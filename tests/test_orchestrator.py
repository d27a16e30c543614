from __future__ import annotations

import asyncio
from typing import Dict, List, Sequence

import pytest

from conftest import EGGS, FLOUR, MILK, NOW, SPAGHETTI, product, tesco_mappings, tesco_prices
from pricequote.config import Settings
from pricequote.errors import BackingStoreError, BasketValidationError, QuoteDeadlineExceeded
from pricequote.schemas import MenuItem, MenuQuoteRequest, QuoteRequest, Recipe
from pricequote.services.catalog import STORE_UNAVAILABLE
from pricequote.services.orchestrator import QuoteService
from pricequote.services.recipe_cache import RecipeCache
from pricequote.services.store_mapping import StoreMapping
from pricequote.services.stores import MemoryCatalogStore, MemoryPriceCacheStore
from pricequote.services.units import UnitType


class FlakyCatalogStore(MemoryCatalogStore):
    def __init__(self, *args, failing_stores: Sequence[str] = (), delay: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_stores = set(failing_stores)
        self.delay = delay
        self.mapping_calls: List[str] = []

    async def load_store_mappings(self, store, canonical_ids):
        self.mapping_calls.append(store)
        if self.delay:
            await asyncio.sleep(self.delay)
        if store in self.failing_stores:
            raise BackingStoreError(f"connection reset while loading {store}")
        return await super().load_store_mappings(store, canonical_ids)


class RecordingLogSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: List[Dict] = []

    async def record(self, request, response, notes=None):
        if self.fail:
            raise RuntimeError("quote_logs table missing")
        self.entries.append({"request": request, "response": response})


def _settings(**overrides) -> Settings:
    values = {"quote_deadline_seconds": 5.0, "quote_log_enabled": True}
    values.update(overrides)
    return Settings(**values)


def _service(catalog_store=None, log_sink=None, **settings) -> QuoteService:
    asda = [StoreMapping("c-eggs", 0, product("a-eggs", "asda", 12, UnitType.COUNT), sequence=10)]
    prices = list(tesco_prices().values())
    return QuoteService(
        catalog_store or FlakyCatalogStore([SPAGHETTI, EGGS, MILK, FLOUR], tesco_mappings() + asda),
        MemoryPriceCacheStore(prices),
        log_sink,
        settings=_settings(**settings),
        clock=lambda: NOW,
    )


def _request(stores=("tesco",), postcode=None) -> QuoteRequest:
    return QuoteRequest.model_validate(
        {
            "stores": list(stores),
            "postcode": postcode,
            "items": [
                {"ingredientName": "spaghetti", "required": {"value": 200, "unit": "GRAM"}},
                {"ingredientName": "eggs", "required": {"value": 2, "unit": "COUNT"}},
            ],
        }
    )


def test_quote_end_to_end():
    response = asyncio.run(_service().quote(_request()))

    assert response.currency == "GBP"
    assert response.meta.postcodeArea is None
    assert response.meta.ttlHours == 24
    [quote] = response.quotes
    assert quote.store == "tesco"
    assert quote.basketTotal == 3.25
    assert quote.missingCount == 0


def test_failing_store_does_not_block_other_stores():
    store = FlakyCatalogStore(
        [SPAGHETTI, EGGS, MILK, FLOUR], tesco_mappings(), failing_stores=["asda"]
    )

    response = asyncio.run(_service(catalog_store=store).quote(_request(stores=("asda", "tesco"))))

    by_store = {q.store: q for q in response.quotes}
    assert [q.store for q in response.quotes] == ["asda", "tesco"]
    assert by_store["tesco"].basketTotal == 3.25
    assert by_store["tesco"].error is None
    failed = by_store["asda"]
    assert failed.error == STORE_UNAVAILABLE
    assert failed.basketTotal == 0
    assert {m.reason for m in failed.missingItems} == {STORE_UNAVAILABLE}
    assert failed.warnings


def test_store_without_prices_reports_missing_items():
    response = asyncio.run(_service().quote(_request(stores=("asda",))))

    [quote] = response.quotes
    reasons = {m.ingredientName: m.reason for m in quote.missingItems}
    assert reasons == {"spaghetti": "no_store_mapping", "eggs": "no_cached_price"}


def test_duplicate_stores_are_quoted_once():
    service = _service()
    response = asyncio.run(service.quote(_request(stores=("tesco", " tesco "))))

    assert [q.store for q in response.quotes] == ["tesco"]
    assert service.catalog_store.mapping_calls == ["tesco"]


def test_quotes_are_idempotent():
    service = _service()

    async def run_twice():
        return await service.quote(_request()), await service.quote(_request())

    first, second = asyncio.run(run_twice())
    assert first.model_dump_json() == second.model_dump_json()


def test_postcode_selects_region_bucket():
    response = asyncio.run(_service().quote(_request(postcode="sw1a 1aa")))

    assert response.meta.postcodeArea == "SW1A"
    # tesco prices are only cached for the GLOBAL bucket
    assert response.quotes[0].missingCount == 2


def test_deadline_fails_the_whole_request():
    store = FlakyCatalogStore([SPAGHETTI, EGGS], tesco_mappings(), delay=0.5)
    service = _service(catalog_store=store, quote_deadline_seconds=0.05)

    with pytest.raises(QuoteDeadlineExceeded):
        asyncio.run(service.quote(_request()))


def test_slow_catalog_load_counts_against_the_deadline():
    class SlowCatalog(FlakyCatalogStore):
        async def load_canonical_items(self):
            await asyncio.sleep(1.0)
            return await super().load_canonical_items()

    store = SlowCatalog([SPAGHETTI, EGGS], tesco_mappings())
    service = _service(catalog_store=store, quote_deadline_seconds=0.1)

    with pytest.raises(QuoteDeadlineExceeded):
        asyncio.run(service.quote(_request()))
    assert store.mapping_calls == []


def test_slow_recipe_loader_counts_against_the_deadline():
    async def slow_loader(recipe_id):
        await asyncio.sleep(1.0)
        return None

    service = QuoteService(
        FlakyCatalogStore([SPAGHETTI, EGGS], tesco_mappings()),
        MemoryPriceCacheStore(),
        recipe_cache=RecipeCache(slow_loader),
        settings=_settings(quote_deadline_seconds=0.1),
        clock=lambda: NOW,
    )
    request = MenuQuoteRequest(stores=["tesco"], menu=[MenuItem(recipeId="carbonara", servings=2)])

    with pytest.raises(QuoteDeadlineExceeded):
        asyncio.run(service.quote_menu(request))


def test_catalog_failure_fails_the_request():
    class BrokenCatalog(MemoryCatalogStore):
        async def load_canonical_items(self):
            raise BackingStoreError("catalog unreachable")

    with pytest.raises(BackingStoreError):
        asyncio.run(_service(catalog_store=BrokenCatalog()).quote(_request()))


def test_audit_log_records_request_and_response():
    sink = RecordingLogSink()
    service = _service(log_sink=sink)

    async def run():
        response = await service.quote(_request(postcode="M1 2AB"))
        await service.drain()
        return response

    response = asyncio.run(run())

    [entry] = sink.entries
    assert entry["request"]["postcode"] == "M1"
    assert entry["response"]["quotes"][0]["store"] == response.quotes[0].store


def test_audit_log_failure_is_swallowed():
    service = _service(log_sink=RecordingLogSink(fail=True))

    async def run():
        response = await service.quote(_request())
        await service.drain()
        return response

    response = asyncio.run(run())
    assert response.quotes[0].basketTotal == 3.25


def test_menu_quote_uses_recipe_cache():
    recipe = Recipe.model_validate(
        {
            "id": "carbonara",
            "servings": 4,
            "ingredients": [
                {"name": "Spaghetti", "quantity": 0.4, "unit": "kg"},
                {"name": "Eggs", "quantity": 4, "unit": "pieces"},
            ],
        }
    )
    service = _service()
    request = MenuQuoteRequest(
        stores=["tesco"],
        recipes=[recipe],
        menu=[MenuItem(recipeId="carbonara", servings=2)],
    )

    response = asyncio.run(service.quote_menu(request))

    lines = {line.canonicalName: line for line in response.quotes[0].lineItems}
    assert lines["spaghetti"].required.value == pytest.approx(200)
    assert lines["eggs"].required.value == pytest.approx(2)
    assert service.recipe_cache.get("carbonara") is not None

    # the cached recipe serves later requests that only reference it
    again = asyncio.run(
        service.quote_menu(MenuQuoteRequest(stores=["tesco"], menu=[MenuItem(recipeId="carbonara", servings=4)]))
    )
    assert again.quotes[0].basketTotal == pytest.approx(3.25)


def test_unknown_recipe_rejects_before_any_store_query():
    store = FlakyCatalogStore([SPAGHETTI, EGGS], tesco_mappings())
    service = QuoteService(
        store,
        MemoryPriceCacheStore(),
        recipe_cache=RecipeCache(),
        settings=_settings(),
        clock=lambda: NOW,
    )
    request = MenuQuoteRequest(stores=["tesco"], menu=[MenuItem(recipeId="ghost", servings=2)])

    with pytest.raises(BasketValidationError):
        asyncio.run(service.quote_menu(request))
    assert store.mapping_calls == []
