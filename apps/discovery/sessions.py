# apps/discovery/sessions.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import StorageError


@asynccontextmanager
async def storage_session(
    sessionmaker: async_sessionmaker,
    operation: str,
    entity_id: Optional[Any] = None,
    *,
    logger: logging.Logger,
) -> AsyncIterator[AsyncSession]:
    """One short-lived session per store call; driver errors become StorageError."""
    try:
        async with sessionmaker() as session:
            yield session
    except SQLAlchemyError as exc:
        logger.warning("storage_failed op=%s id=%s", operation, entity_id, exc_info=exc)
        raise StorageError(operation, entity_id) from exc
