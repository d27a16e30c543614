from __future__ import annotations

import os
from fastapi import APIRouter, Request
from ..config import get_settings
from ..db import get_sessionmaker


router = APIRouter()


@router.get("/health")
def health(request: Request):
    s = get_settings()
    service = getattr(request.app.state, "quote_service", None)
    return {
        "status": "ok",
        "service": s.app_name,
        "env": s.environment,
        "pid": os.getpid(),
        "database": get_sessionmaker() is not None,
        "priceCacheBackend": s.price_cache_backend,
        "catalogStore": type(service.catalog_store).__name__ if service else None,
    }
