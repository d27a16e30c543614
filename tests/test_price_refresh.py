from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import NOW, price, product
from pricequote import cli
from pricequote.config import Settings
from pricequote.services.price_refresh import refresh_prices
from pricequote.services.providers import ProviderError, ProviderPrice
from pricequote.services.stores import MemoryPriceCacheStore
from pricequote.services.units import UnitType

SEED = Path(__file__).resolve().parents[1] / "data" / "seed.sample.json"


class StubProvider:
    def __init__(self, prices=None, failing=()):
        self.prices = prices or {}
        self.failing = set(failing)
        self.calls = []

    def fetch_price(self, store, provider_ref, postcode=None):
        self.calls.append((store, provider_ref, postcode))
        if provider_ref in self.failing:
            raise ProviderError(f"Provider returned no items for {provider_ref}")
        return ProviderPrice(price=self.prices.get(provider_ref, 1.0), in_stock=True, fetched_at=NOW)


EGGS = product("t-eggs", "tesco", 6, UnitType.COUNT)
MILK = product("t-milk", "tesco", 1000, UnitType.ML)


def test_refresh_writes_entries_with_a_ttl():
    store = MemoryPriceCacheStore()
    provider = StubProvider({EGGS.provider_product_id: 2.55})

    summary = asyncio.run(refresh_prices([EGGS], provider, store, ttl_hours=12, now=NOW))

    assert summary.to_dict() == {
        "total": 1,
        "refreshed": 1,
        "skippedFresh": 0,
        "failed": 0,
        "failures": [],
    }
    entry = store.entries[("t-eggs", "GLOBAL")]
    assert entry.price == 2.55
    assert entry.in_stock is True
    assert entry.ttl_expires_at == NOW + timedelta(hours=12)


def test_fresh_rows_are_skipped_unless_forced():
    store = MemoryPriceCacheStore([price("t-eggs", 2.40), price("t-milk", 1.25, stale=True)])
    provider = StubProvider()

    summary = asyncio.run(refresh_prices([EGGS, MILK], provider, store, now=NOW))

    assert summary.skipped_fresh == 1
    assert summary.refreshed == 1
    assert [ref for _, ref, _ in provider.calls] == [MILK.provider_product_id]
    assert store.entries[("t-eggs", "GLOBAL")].price == 2.40

    forced = asyncio.run(refresh_prices([EGGS, MILK], provider, store, force=True, now=NOW))

    assert forced.refreshed == 2
    assert forced.skipped_fresh == 0
    assert store.entries[("t-eggs", "GLOBAL")].price == 1.0


def test_provider_failure_skips_only_that_product():
    store = MemoryPriceCacheStore()
    provider = StubProvider(failing=[EGGS.provider_product_id])

    summary = asyncio.run(refresh_prices([EGGS, MILK], provider, store, now=NOW))

    assert summary.failed == 1
    assert summary.failures == ["t-eggs"]
    assert summary.refreshed == 1
    assert list(store.entries) == [("t-milk", "GLOBAL")]


def test_postcode_refreshes_its_region_bucket():
    store = MemoryPriceCacheStore([price("t-eggs", 2.40)])
    provider = StubProvider()

    summary = asyncio.run(refresh_prices([EGGS], provider, store, postcode="sw1a 1aa", now=NOW))

    # the GLOBAL row is fresh but says nothing about SW1A
    assert summary.refreshed == 1
    assert provider.calls == [("tesco", EGGS.provider_product_id, "sw1a 1aa")]
    assert ("t-eggs", "SW1A") in store.entries


def test_refresh_command_prints_a_summary(monkeypatch, capsys):
    settings = Settings(
        catalog_path=str(SEED),
        provider_base_url="https://provider.test",
        provider_api_key="secret",
        price_cache_backend="sql",
    )
    providers = []

    class ContextStub(StubProvider):
        def __init__(self, config):
            super().__init__()
            providers.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return None

    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "init_engine", lambda: None)
    monkeypatch.setattr(cli, "get_sessionmaker", lambda: None)
    monkeypatch.setattr(cli, "HttpPricingProvider", ContextStub)

    cli.main(["refresh-prices", "--store", "tesco", "--limit", "2"])

    summary = json.loads(capsys.readouterr().out)
    # sample seed prices expired long ago, so every selected product is refetched
    assert summary["total"] == 2
    assert summary["refreshed"] == 2
    assert {store for store, _, _ in providers[0].calls} == {"tesco"}


def test_refresh_command_requires_provider_credentials(monkeypatch):
    monkeypatch.setattr(cli, "get_settings", lambda: Settings(provider_base_url=None, provider_api_key=None))

    with pytest.raises(SystemExit, match="PROVIDER_BASE_URL"):
        cli.main(["refresh-prices"])
