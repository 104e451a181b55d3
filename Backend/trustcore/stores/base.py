"""Shared plumbing for the SQLAlchemy stores: session-per-call, deadlines and record validation."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustcore.config import get_settings
from trustcore.errors import RepositoryError
from trustcore.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


def row_to_dict(row: Any) -> Dict[str, Any]:
    """Column attributes of an ORM instance, keyed by attribute name."""
    return {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}


def to_record(schema: Type[M], obj: Any, entity: str) -> M:
    """Validate a stored row. Rows that fail validation are never handed out as domain data."""
    try:
        return schema.model_validate(obj)
    except PydanticValidationError as e:
        logger.error("Invalid %s record rejected: %s", entity, e)
        raise RepositoryError(f"Invalid {entity} data", details={"errors": e.errors(include_url=False)}, cause=e)


class StoreBase:
    """
    Base for stores. Every public operation opens its own session through
    ``_run`` so concurrent callers never share one, and is bounded by
    ``timeout`` seconds.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        timeout: Optional[float] = None,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._timeout = timeout if timeout is not None else get_settings().store_timeout_seconds
        self._clock = clock

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _call() -> T:
            async with self._session_factory() as session:
                try:
                    return await fn(session)
                except Exception:
                    await session.rollback()
                    raise

        try:
            return await asyncio.wait_for(_call(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("Store operation timed out: %s (%.2fs)", operation, self._timeout)
            raise RepositoryError(f"Timed out: {operation}", cause=e)
        except SQLAlchemyError as e:
            logger.exception("Store operation failed: %s", operation)
            raise RepositoryError(f"Failed to {operation}", cause=e)
