"""Base repository with common CRUD operations.

Mutations only stage changes in the session. Nothing is flushed or
committed here; the caller's UnitOfWork commits them atomically.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from invoice_reminder.exceptions import DataLayerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def translate_query_errors(operation: str) -> Iterator[None]:
    """Re-raise storage errors from a read as DataLayerError."""
    try:
        yield
    except SQLAlchemyError as e:
        contextual_info = f"Exception raised while querying DB >> {operation}(...)"
        logger.error("%s - Exception: %s", contextual_info, e, exc_info=True)
        raise DataLayerError(contextual_info) from e


class BaseRepository(Generic[T]):
    """Base repository with common CRUD operations.

    Subclasses must set:
    - model: The SQLAlchemy model class
    - order_by_field: Field to use for ordering in list queries
    """

    model: type[T]  # Set by subclasses
    order_by_field: str = "created_at"

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session owned by a UnitOfWork
        """
        self.session = session

    @property
    def _name(self) -> str:
        return type(self).__name__

    def add(self, entity: T) -> T:
        """Stage a new entity for insertion."""
        self.session.add(entity)
        return entity

    async def update(self, entity: T) -> T:
        """Stage changes of a (possibly detached) entity.

        Returns:
            The session-bound instance carrying the changes
        """
        return await self.session.merge(entity)

    async def remove(self, entity: T) -> None:
        """Stage an entity for deletion.

        Detached instances are merged into the session first.
        """
        if entity not in self.session:
            entity = await self.session.merge(entity)
        await self.session.delete(entity)

    async def get_by_id(self, id: str) -> T | None:
        """Get entity by primary key.

        Args:
            id: Internal UUID

        Returns:
            Entity or None
        """
        with translate_query_errors(f"{self._name}.get_by_id"):
            return await self.session.get(self.model, id)

    async def get_all(self) -> list[T]:
        """Load every row of the table, oldest first."""
        return await self.list_all()

    async def list_all(self, limit: int | None = None, offset: int = 0, **filters: Any) -> list[T]:
        """List entities with optional filtering.

        Args:
            limit: Max results (None = no limit)
            offset: Skip results
            **filters: Equality filters as keyword arguments

        Returns:
            List of entities
        """
        query = select(self.model)

        for key, value in filters.items():
            if value is not None and hasattr(self.model, key):
                query = query.where(getattr(self.model, key) == value)

        order_by_attr = getattr(self.model, self.order_by_field, None)
        if order_by_attr is not None:
            query = query.order_by(order_by_attr)

        if limit is not None:
            query = query.limit(limit)
        if offset:
            query = query.offset(offset)

        with translate_query_errors(f"{self._name}.list_all"):
            result = await self.session.execute(query)
            return list(result.scalars().all())

    async def count(self, **filters: Any) -> int:
        """Count entities, optionally with equality filters."""
        query = select(func.count()).select_from(self.model)

        for key, value in filters.items():
            if value is not None and hasattr(self.model, key):
                query = query.where(getattr(self.model, key) == value)

        with translate_query_errors(f"{self._name}.count"):
            result = await self.session.execute(query)
            return result.scalar() or 0
