"""
Narrow typed repository over one table.

Every billing module reads and writes through ``Repository`` so queries
stay inside the caller's transaction (the session is never committed
here; ``get_async_db`` owns commit and rollback).
"""

from collections.abc import Iterable, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.exceptions import NotFoundError
from flowledger.platform.db import Base

EntityT = TypeVar("EntityT", bound=Base)


class Repository(Generic[EntityT]):
    """insert / select_by_id / select_where / update for a single entity."""

    def __init__(self, session: AsyncSession, model: type[EntityT]) -> None:
        self.session = session
        self.model = model

    @property
    def resource_name(self) -> str:
        return self.model.__name__

    async def insert(self, **values: Any) -> EntityT:
        entity = self.model(**values)
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def insert_many(self, rows: Iterable[dict[str, Any]]) -> list[EntityT]:
        entities = [self.model(**row) for row in rows]
        self.session.add_all(entities)
        await self.session.flush()
        return entities

    async def find_by_id(self, entity_id: str) -> EntityT | None:
        return await self.session.get(self.model, entity_id)

    async def select_by_id(self, entity_id: str) -> EntityT:
        entity = await self.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError(self.resource_name, entity_id)
        return entity

    async def select_where(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        for_update: bool = False,
    ) -> list[EntityT]:
        stmt = select(self.model).where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def select_one_where(self, *criteria: ColumnElement[bool]) -> EntityT | None:
        result = await self.session.execute(select(self.model).where(*criteria).limit(1))
        return result.scalar_one_or_none()

    async def update(self, entity: EntityT, **values: Any) -> EntityT:
        for key, value in values.items():
            setattr(entity, key, value)
        await self.session.flush()
        return entity

    async def bulk_update(self, criteria: Sequence[ColumnElement[bool]], **values: Any) -> int:
        """Set ``values`` on every matching row, returning the row count."""
        stmt = (
            update(self.model)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0


__all__ = ["Repository"]
