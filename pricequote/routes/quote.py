from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..config import get_settings
from ..errors import BackingStoreError, BasketValidationError, QuoteDeadlineExceeded
from ..ratelimit import limiter
from ..schemas import MenuQuoteRequest, QuoteRequest, QuoteResponse
from ..services.orchestrator import QuoteService


router = APIRouter(prefix="/quote", tags=["quote"])

logger = logging.getLogger(__name__)


def get_quote_service(request: Request) -> QuoteService:
    service = getattr(request.app.state, "quote_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Quote service not ready")
    return service


async def _run(coro) -> QuoteResponse:
    try:
        return await coro
    except BasketValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except QuoteDeadlineExceeded as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    except BackingStoreError as exc:
        logger.exception("Catalog unavailable while quoting")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("", response_model=QuoteResponse)
@limiter.limit(get_settings().quote_rate_limit)
async def create_quote(
    request: Request,
    payload: QuoteRequest,
    service: QuoteService = Depends(get_quote_service),
) -> QuoteResponse:
    logger.info("Quote requested stores=%s items=%d", payload.stores, len(payload.items))
    return await _run(service.quote(payload))


@router.post("/menu", response_model=QuoteResponse)
@limiter.limit(get_settings().quote_rate_limit)
async def create_menu_quote(
    request: Request,
    payload: MenuQuoteRequest,
    service: QuoteService = Depends(get_quote_service),
) -> QuoteResponse:
    logger.info(
        "Menu quote requested stores=%s menu=%d recipes=%d",
        payload.stores,
        len(payload.menu),
        len(payload.recipes),
    )
    return await _run(service.quote_menu(payload))
