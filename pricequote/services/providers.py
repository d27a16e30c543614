"""Provider price adapter.

Retailer payloads are heterogeneous JSON (JSON-LD `offers`, nested
`priceSpecification`, currency symbols, schema.org availability URLs). All of
that is handled here; the quote engine only ever sees `PriceEntry` rows.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import Settings
from .price_cache import PriceEntry, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "GBP"
_CURRENCY_SYMBOLS = {"£": "GBP", "GBX": "GBP", "$": "USD", "€": "EUR"}
_NUMBER_CLEANUP = re.compile(r"[^0-9.]")


class ProviderError(RuntimeError):
    """Raised when a provider cannot return a usable price."""


@dataclass(frozen=True)
class ProviderPrice:
    price: float
    currency: str = DEFAULT_CURRENCY
    unit_price: Optional[float] = None
    promo_text: Optional[str] = None
    in_stock: Optional[bool] = None
    fetched_at: Optional[datetime] = None


class PricingProvider(Protocol):
    def fetch_price(
        self, store: str, provider_ref: str, postcode: Optional[str] = None
    ) -> ProviderPrice:
        ...


def parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = _NUMBER_CLEANUP.sub("", value)
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def normalize_currency(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_CURRENCY
    upper = value.strip().upper()
    if upper in _CURRENCY_SYMBOLS:
        return _CURRENCY_SYMBOLS[upper]
    if re.fullmatch(r"[A-Z]{3}", upper):
        return upper
    return DEFAULT_CURRENCY


def _extract_offer(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    offers = item.get("offers")
    if isinstance(offers, list):
        return next((offer for offer in offers if isinstance(offer, dict)), None)
    return offers if isinstance(offers, dict) else None


def _offer_value(offer: Optional[Dict[str, Any]], key: str) -> Any:
    if not offer:
        return None
    if key in offer:
        return offer[key]
    spec = offer.get("priceSpecification")
    return spec.get(key) if isinstance(spec, dict) else None


def parse_in_stock(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lower = value.lower()
        if "outofstock" in lower:
            return False
        if "instock" in lower:
            return True
    return None


def _first_present(*values: Any) -> Any:
    return next((v for v in values if v is not None), None)


def parse_provider_price(item: Dict[str, Any], *, fetched_at: Optional[datetime] = None) -> ProviderPrice:
    offer = _extract_offer(item)
    price = parse_number(
        _first_present(
            _offer_value(offer, "price"),
            item.get("price"),
            item.get("currentPrice"),
            item.get("offerPrice"),
        )
    )
    if price is None:
        raise ProviderError("Provider response missing price data")

    promo = item.get("promoText")
    if not isinstance(promo, str):
        promo = item.get("description") if isinstance(item.get("description"), str) else None

    return ProviderPrice(
        price=price,
        currency=normalize_currency(
            _first_present(_offer_value(offer, "priceCurrency"), item.get("priceCurrency"), item.get("currency"))
        ),
        unit_price=parse_number(_first_present(_offer_value(offer, "unitPrice"), item.get("unitPrice"))),
        promo_text=promo,
        in_stock=parse_in_stock(_first_present(item.get("inStock"), _offer_value(offer, "availability"))),
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )


def to_cache_entry(
    store_product_id: str,
    price: ProviderPrice,
    region_bucket: str,
    ttl_hours: int,
) -> PriceEntry:
    fetched_at = ensure_utc(price.fetched_at or datetime.now(timezone.utc))
    return PriceEntry(
        store_product_id=store_product_id,
        region_bucket=region_bucket,
        price=price.price,
        unit_price=price.unit_price,
        promo_text=price.promo_text,
        in_stock=price.in_stock,
        currency=price.currency,
        fetched_at=fetched_at,
        ttl_expires_at=fetched_at + timedelta(hours=ttl_hours),
    )


@dataclass
class ProviderConfig:
    base_url: str
    api_key: str
    timeout: float = 60.0
    max_retries: int = 2
    delay_range: tuple[float, float] = (0.3, 0.6)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        if not settings.provider_base_url or not settings.provider_api_key:
            raise ProviderError("PROVIDER_BASE_URL and PROVIDER_API_KEY are required")
        return cls(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
        )


class HttpPricingProvider:
    """Dataset-style scraping API: POST product URLs, get back a list of JSON items."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpPricingProvider":  # pragma: no cover - trivial
        return self

    def __exit__(self, *exc: object) -> None:  # pragma: no cover - trivial
        self.close()

    def fetch_price(
        self, store: str, provider_ref: str, postcode: Optional[str] = None
    ) -> ProviderPrice:
        items = self._run({"detailsUrls": [{"url": provider_ref}], "store": store, "postcode": postcode}, limit=1)
        item = next((entry for entry in items if isinstance(entry, dict)), None)
        if item is None:
            raise ProviderError(f"Provider returned no items for {provider_ref}")
        return parse_provider_price(item)

    def _run(self, payload: Dict[str, Any], *, limit: int) -> List[Any]:
        body = {k: v for k, v in payload.items() if v is not None}
        params = {"clean": "true", "format": "json", "limit": str(limit)}
        attempt = 0
        last_exc: Optional[Exception] = None
        while attempt <= self.config.max_retries:
            try:
                response = self._client.post("/run-sync-get-dataset-items", params=params, json=body)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_exc = exc
                attempt += 1
                if attempt <= self.config.max_retries:
                    self._sleep_with_jitter(attempt)
                continue
            if not isinstance(data, list):
                raise ProviderError("Provider response is not a list of items")
            return data
        raise ProviderError("Provider request failed") from last_exc

    def _sleep_with_jitter(self, attempt: int) -> None:
        base = random.uniform(*self.config.delay_range)
        time.sleep(base * attempt)
