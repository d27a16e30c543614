from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings

logger = logging.getLogger(__name__)


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def validate_settings(settings: Settings) -> None:
    """Fail fast when the quote engine has no catalog/cache backing outside dev."""
    environment = (settings.environment or "dev").lower()

    if settings.price_cache_backend == "redis" and not settings.redis_url:
        raise RuntimeError("PRICE_CACHE_BACKEND=redis requires REDIS_URL")

    if environment == "dev":
        dev_missing = _collect_missing(settings, [("database_url", "DATABASE_URL")])
        if dev_missing and not settings.catalog_path:
            logger.warning(
                "Running in dev without DATABASE_URL or CATALOG_PATH; quotes will be empty (missing=%s)",
                dev_missing,
            )
        return

    required_pairs: list[Tuple[str, str]] = [("database_url", "DATABASE_URL")]
    if settings.price_cache_backend == "redis":
        required_pairs.append(("redis_url", "REDIS_URL"))

    missing = _collect_missing(settings, required_pairs)
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
