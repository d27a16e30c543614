"""Command-line client for the quote service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import Settings, get_settings
from .db import dispose_engine, get_sessionmaker, init_engine
from .redis_util import get_redis
from .schemas import MenuItem, Recipe
from .services.orchestrator import build_quote_service
from .services.price_refresh import RefreshSummary, refresh_prices
from .services.providers import HttpPricingProvider, ProviderConfig, ProviderError
from .services.stores import DEFAULT_REFRESH_LIMIT, MemoryPriceCacheStore
from .services.units import normalize

logger = logging.getLogger(__name__)


def _default_api_base() -> str:
    return os.environ.get("PRICEQUOTE_API_BASE", "http://localhost:8000/v1")


def build_quote_items(recipes: Sequence[Recipe], menu: Sequence[MenuItem]) -> List[Dict[str, Any]]:
    """Scale menu recipes and sum quantities per ingredient name, as the shopping screen does."""
    by_id = {recipe.id: recipe for recipe in recipes}
    aggregated: Dict[str, Dict[str, Any]] = {}
    for entry in menu:
        recipe = by_id.get(entry.recipeId)
        if recipe is None or recipe.servings <= 0:
            logger.warning("Skipping menu entry for unknown recipe %s", entry.recipeId)
            continue
        scale = entry.servings / recipe.servings
        for ingredient in recipe.ingredients:
            name = ingredient.lookup_name.strip()
            if not name or not math.isfinite(ingredient.quantity):
                continue
            normalized = normalize(ingredient.unit, ingredient.quantity * scale)
            # differing unit families stay apart so the server can report the mismatch
            key = f"{name.lower()}|{normalized.unit.value}"
            existing = aggregated.get(key)
            if existing is not None:
                existing["required"]["value"] += normalized.value
                continue
            aggregated[key] = {
                "ingredientName": name,
                "required": {"value": normalized.value, "unit": normalized.unit.value},
            }
    return list(aggregated.values())


def _post(endpoint: str, payload: Dict[str, Any], *, api_base: str, timeout: float) -> Dict[str, Any]:
    url = f"{api_base.rstrip('/')}/{endpoint.lstrip('/')}"
    with httpx.Client(timeout=timeout) as client:
        resp = client.post(url, json=payload)
    try:
        data = resp.json()
    except ValueError:
        data = {"text": resp.text}
    if resp.status_code >= 400:
        raise SystemExit(f"[{resp.status_code}] {json.dumps(data, indent=2)}")
    return data


def run_quote(args: argparse.Namespace) -> None:
    with open(args.menu, "r", encoding="utf-8") as f:
        data = json.load(f)
    recipes = [Recipe.model_validate(r) for r in data.get("recipes", [])]
    menu = [MenuItem.model_validate(m) for m in data.get("menu", [])]
    stores = args.store or data.get("stores") or []
    if not stores:
        raise SystemExit("At least one --store is required")
    postcode = args.postcode or data.get("postcode")

    if args.server_side:
        payload: Dict[str, Any] = {
            "stores": stores,
            "postcode": postcode,
            "recipes": [r.model_dump(mode="json") for r in recipes],
            "menu": [m.model_dump(mode="json") for m in menu],
        }
        result = _post("/quote/menu", payload, api_base=args.api_base, timeout=args.timeout)
    else:
        payload = {"stores": stores, "postcode": postcode, "items": build_quote_items(recipes, menu)}
        result = _post("/quote", payload, api_base=args.api_base, timeout=args.timeout)
    print(json.dumps(result, indent=2))


def run_fetch_price(args: argparse.Namespace) -> None:
    try:
        config = ProviderConfig.from_settings(get_settings())
        with HttpPricingProvider(config) as provider:
            price = provider.fetch_price(args.store, args.ref, args.postcode)
    except ProviderError as exc:
        raise SystemExit(f"Price fetch failed: {exc}") from exc
    print(
        json.dumps(
            {
                "price": price.price,
                "currency": price.currency,
                "unitPrice": price.unit_price,
                "promoText": price.promo_text,
                "inStock": price.in_stock,
                "fetchedAt": price.fetched_at.isoformat() if price.fetched_at else None,
            },
            indent=2,
        )
    )


async def _refresh(args: argparse.Namespace, settings: Settings, config: ProviderConfig) -> RefreshSummary:
    init_engine()
    redis_client = get_redis() if settings.price_cache_backend == "redis" else None
    try:
        service = build_quote_service(settings, get_sessionmaker(), redis_client)
        if isinstance(service.price_store, MemoryPriceCacheStore):
            logger.warning("No persistent price cache configured; refreshed prices are discarded on exit")
        products = await service.catalog_store.load_active_products(
            stores=args.store or (), product_ids=args.product_id or (), limit=args.limit
        )
        with HttpPricingProvider(config) as provider:
            return await refresh_prices(
                products,
                provider,
                service.price_store,
                postcode=args.postcode,
                ttl_hours=settings.quote_ttl_hours,
                force=args.force,
            )
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await dispose_engine()


def run_refresh_prices(args: argparse.Namespace) -> None:
    settings = get_settings()
    try:
        config = ProviderConfig.from_settings(settings)
    except ProviderError as exc:
        raise SystemExit(f"Price refresh failed: {exc}") from exc
    summary = asyncio.run(_refresh(args, settings, config))
    print(json.dumps(summary.to_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Basket price quote tooling")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    quote = subparsers.add_parser("quote", help="Quote a menu file against the service")
    quote.add_argument("--menu", type=Path, required=True, help="JSON file with recipes, menu, stores")
    quote.add_argument("--store", action="append", help="Store id (repeatable); overrides the file")
    quote.add_argument("--postcode", default=None)
    quote.add_argument("--api-base", default=_default_api_base())
    quote.add_argument("--timeout", type=float, default=30.0)
    quote.add_argument(
        "--server-side",
        action="store_true",
        help="Send recipes to /quote/menu instead of aggregating locally",
    )
    quote.set_defaults(func=run_quote)

    fetch = subparsers.add_parser("fetch-price", help="Fetch one live price through the provider adapter")
    fetch.add_argument("--store", required=True)
    fetch.add_argument("--ref", required=True, help="Provider product reference (usually a product URL)")
    fetch.add_argument("--postcode", default=None)
    fetch.set_defaults(func=run_fetch_price)

    refresh = subparsers.add_parser("refresh-prices", help="Refresh cached prices for active store products")
    refresh.add_argument("--store", action="append", help="Only refresh this store (repeatable)")
    refresh.add_argument("--product-id", action="append", help="Only refresh this store product (repeatable)")
    refresh.add_argument("--postcode", default=None, help="Region bucket to refresh; GLOBAL when omitted")
    refresh.add_argument("--limit", type=int, default=DEFAULT_REFRESH_LIMIT)
    refresh.add_argument("--force", action="store_true", help="Refetch prices that are still fresh")
    refresh.set_defaults(func=run_refresh_prices)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))
    args.func(args)


if __name__ == "__main__":
    main()
