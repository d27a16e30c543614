from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .config import get_settings
from .db import dispose_engine, get_sessionmaker, init_engine
from .observability import configure_logging, init_sentry
from .redis_util import get_redis
from .startup import validate_settings
from .routes import health, quote
from .ratelimit import limiter
from .services.orchestrator import build_quote_service
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    service = getattr(app.state, "quote_service", None)
    if service is not None:
        await service.drain()
    await dispose_engine()


def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name, lifespan=lifespan)

    # Initialize DB engine if configured
    init_engine()
    redis_client = get_redis() if s.price_cache_backend == "redis" else None
    app.state.quote_service = build_quote_service(s, get_sessionmaker(), redis_client)

    # CORS
    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(quote.router, prefix=prefix)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("pricequote.main:app", host="0.0.0.0", port=port, reload=False)
