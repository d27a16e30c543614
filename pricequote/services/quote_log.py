from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import QuoteLog

logger = logging.getLogger(__name__)


class QuoteLogSink(Protocol):
    async def record(
        self,
        request: Dict[str, Any],
        response: Dict[str, Any],
        notes: Optional[str] = None,
    ) -> None:
        ...


class NullQuoteLogSink:
    async def record(
        self,
        request: Dict[str, Any],
        response: Dict[str, Any],
        notes: Optional[str] = None,
    ) -> None:
        logger.debug("Quote log disabled; dropping entry for stores=%s", request.get("stores"))


class SqlQuoteLogSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        request: Dict[str, Any],
        response: Dict[str, Any],
        notes: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(QuoteLog(request=request, response=response, notes=notes))
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise
