"""Narrow repository interface over the authoritative store.

Job handlers and request-path services read and write entities only
through this interface:

    get(Model, id)                 -> entity or None
    save(entity)                   -> entity (insert or overwrite)
    delete(Model, id)              -> True if something was deleted
    query(Model, filters, ...)     -> Page
    commit()                       -> make the writes durable

The kind of an entity is its ORM model class. Filters are equality
matches on column attributes; a list or tuple value means "IN".

SqlRepository works on an AsyncSession. InMemoryRepository keeps
entities in dictionaries and serves tests and single-process demos.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from taskflow.db.models.base import Base

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager

    from sqlalchemy.ext.asyncio import AsyncSession

    from taskflow.db import Database

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

DEFAULT_PAGE_SIZE = 100


class RepositoryError(Exception):
    """Base exception for store access failures."""

    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a required entity does not exist."""

    def __init__(self, model: type[Base], entity_id: object) -> None:
        self.model = model
        self.entity_id = entity_id
        super().__init__(f"{model.__name__} not found: {entity_id}")


@dataclass
class Page(Generic[ModelT]):
    """One page of query results."""

    items: list[ModelT] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def primary_key_name(model: type[Base]) -> str:
    """Attribute name of the single-column primary key of ``model``."""
    return inspect(model).primary_key[0].key


class Repository(ABC):
    """Authoritative store access used by services and job handlers."""

    @abstractmethod
    async def get(self, model: type[ModelT], entity_id: object) -> ModelT | None: ...

    @abstractmethod
    async def save(self, entity: ModelT) -> ModelT: ...

    @abstractmethod
    async def delete(self, model: type[Base], entity_id: object) -> bool: ...

    @abstractmethod
    async def query(
        self,
        model: type[ModelT],
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ModelT]: ...

    @abstractmethod
    async def commit(self) -> None: ...

    async def require(self, model: type[ModelT], entity_id: object) -> ModelT:
        """Like get() but raises EntityNotFoundError when missing."""
        entity = await self.get(model, entity_id)
        if entity is None:
            raise EntityNotFoundError(model, entity_id)
        return entity

    async def query_all(
        self,
        model: type[ModelT],
        filters: dict[str, Any] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[ModelT]:
        """Walk every page of a query."""
        items: list[ModelT] = []
        offset = 0
        while True:
            page = await self.query(model, filters, offset=offset, limit=page_size)
            items.extend(page.items)
            if not page.items or not page.has_more:
                return items
            offset += len(page.items)


class SqlRepository(Repository):
    """Repository on a SQLAlchemy AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, model: type[ModelT], entity_id: object) -> ModelT | None:
        try:
            return await self.session.get(model, entity_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load %s %s: %s", model.__name__, entity_id, e)
            raise RepositoryError(f"Failed to load {model.__name__}: {e}") from e

    async def save(self, entity: ModelT) -> ModelT:
        try:
            merged = await self.session.merge(entity)
            await self.session.flush()
            return merged
        except SQLAlchemyError as e:
            logger.error("Failed to save %s: %s", type(entity).__name__, e)
            raise RepositoryError(f"Failed to save {type(entity).__name__}: {e}") from e

    async def delete(self, model: type[Base], entity_id: object) -> bool:
        try:
            entity = await self.session.get(model, entity_id)
            if entity is None:
                return False
            await self.session.delete(entity)
            await self.session.flush()
            return True
        except SQLAlchemyError as e:
            logger.error("Failed to delete %s %s: %s", model.__name__, entity_id, e)
            raise RepositoryError(f"Failed to delete {model.__name__}: {e}") from e

    async def query(
        self,
        model: type[ModelT],
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ModelT]:
        conditions = []
        for name, value in (filters or {}).items():
            column = getattr(model, name)
            if isinstance(value, list | tuple | set | frozenset):
                conditions.append(column.in_(list(value)))
            elif value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == value)

        pk = getattr(model, primary_key_name(model))
        stmt = select(model).where(*conditions).order_by(pk).offset(offset).limit(limit)
        count_stmt = select(func.count()).select_from(model).where(*conditions)

        try:
            result = await self.session.execute(stmt)
            items = list(result.scalars().all())
            total = (await self.session.execute(count_stmt)).scalar() or 0
        except SQLAlchemyError as e:
            logger.error("Failed to query %s: %s", model.__name__, e)
            raise RepositoryError(f"Failed to query {model.__name__}: {e}") from e

        return Page(items=items, total=total, offset=offset, limit=limit)

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to commit: %s", e)
            raise RepositoryError(f"Failed to commit: {e}") from e


class InMemoryRepository(Repository):
    """Dictionary-backed repository.

    Saved entities are stored by identity; a save of an entity with an
    existing primary key replaces the stored one.
    """

    def __init__(self) -> None:
        self._tables: dict[type[Base], dict[object, Base]] = {}
        self._lock = threading.Lock()
        self.commits = 0

    def _table(self, model: type[Base]) -> dict[object, Base]:
        return self._tables.setdefault(model, {})

    async def get(self, model: type[ModelT], entity_id: object) -> ModelT | None:
        with self._lock:
            return self._table(model).get(entity_id)

    async def save(self, entity: ModelT) -> ModelT:
        model = type(entity)
        pk = primary_key_name(model)
        with self._lock:
            if getattr(entity, pk) is None:
                setattr(entity, pk, uuid.uuid4())
            self._table(model)[getattr(entity, pk)] = entity
        return entity

    async def delete(self, model: type[Base], entity_id: object) -> bool:
        with self._lock:
            return self._table(model).pop(entity_id, None) is not None

    async def query(
        self,
        model: type[ModelT],
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ModelT]:
        with self._lock:
            rows = [e for e in self._table(model).values() if _matches(e, filters or {})]
        return Page(items=rows[offset : offset + limit], total=len(rows), offset=offset, limit=limit)

    async def commit(self) -> None:
        self.commits += 1


def _matches(entity: Base, filters: dict[str, Any]) -> bool:
    for name, expected in filters.items():
        actual = getattr(entity, name)
        if isinstance(expected, list | tuple | set | frozenset):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def sql_repository_scope(
    database: Database,
) -> Callable[[], AbstractAsyncContextManager[Repository]]:
    """Factory of SqlRepository units of work, one session each."""

    @asynccontextmanager
    async def scope() -> AsyncIterator[Repository]:
        async with database.session() as session:
            yield SqlRepository(session)

    return scope


def memory_repository_scope(
    repository: InMemoryRepository,
) -> Callable[[], AbstractAsyncContextManager[Repository]]:
    """Factory handing out the same in-memory repository every time."""

    @asynccontextmanager
    async def scope() -> AsyncIterator[Repository]:
        yield repository

    return scope


def entity_to_dict(entity: Base) -> dict[str, Any]:
    """JSON-compatible view of an entity's columns, used for cached copies."""
    data: dict[str, Any] = {}
    for attr in inspect(type(entity)).column_attrs:
        value = getattr(entity, attr.key)
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        data[attr.key] = value
    return data
