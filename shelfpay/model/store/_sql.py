"""
SQL document-store backend (PostgreSQL via asyncpg, SQLite via aiosqlite).

Each collection is a real table (see ``model/orm.py``). Inside a transaction:
- reads take row locks (``SELECT ... FOR UPDATE``; a no-op on SQLite, where
  the engine gate serializes transactions instead)
- ``set`` is an INSERT, so the primary key rejects a second order for the
  same reference (``DuplicateKey``)
- ``update`` with ``Increment`` compiles to ``col = col + n``; the books
  table's ``CHECK (stock >= 0)`` backs the stock invariant
An ``IntegrityError`` (or a serialization/lock failure) at commit is a
``TransactionConflict`` and the transaction body is re-run.
"""
from __future__ import annotations
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import make_async_engine, Database
from ...infra.timings import timeit
from ..orm import Base, MODELS
from .base import (
    DocumentStore, DuplicateKey, Increment, Transaction, TransactionConflict,
    T,
)
from ...errors import ProcessingFailed

log = logging.getLogger(__name__)


def _model(collection: str):
    try:
        return MODELS[collection]
    except KeyError:
        raise ValueError(f"unknown collection {collection!r}") from None


def _is_retryable(e: DBAPIError) -> bool:
    msg = str(getattr(e, "orig", e)).lower()
    return (
        "database is locked" in msg
        or "could not serialize" in msg
        or "deadlock detected" in msg
    )


def _is_duplicate(e: IntegrityError) -> bool:
    msg = str(getattr(e, "orig", e)).lower()
    return "unique constraint" in msg or "duplicate key" in msg


class SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._ops: List[Tuple[str, str, str, Any]] = []

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        model = _model(collection)
        row = (await self.session.execute(
            select(model).where(model.id == key).with_for_update()
        )).scalar_one_or_none()
        return row.to_doc() if row is not None else None

    def set(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        self._ops.append(("set", collection, key, value))

    def update(self, collection: str, key: str,
               delta: Mapping[str, Any]) -> None:
        self._ops.append(("update", collection, key, dict(delta)))

    async def flush(self) -> None:
        for op, collection, key, value in self._ops:
            model = _model(collection)
            if op == "set":
                self.session.add(model.from_doc(key, value))
                # surface PK conflicts here, before any later op runs
                try:
                    await self.session.flush()
                except IntegrityError as e:
                    if _is_duplicate(e):
                        raise DuplicateKey(
                            f"{collection}/{key} already exists"
                        ) from e
                    raise
                continue

            values = {}
            for field, v in value.items():
                col = model.column_for(field)
                values[col.key] = col + v.by if isinstance(v, Increment) else v
            res = await self.session.execute(
                update(model)
                .where(model.id == key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                raise ProcessingFailed(f"{collection}/{key} does not exist")
        self._ops.clear()


class SqlDocumentStore(DocumentStore):
    def __init__(self, database_url: str) -> None:
        self.db: Database = make_async_engine(database_url)

    async def init(self) -> None:
        async with self.db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.db.engine.dispose()

    async def _attempt(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.db.gated():
            async with self.db.sessions() as session:
                try:
                    async with session.begin():
                        tx = SqlTransaction(session)
                        result = await fn(tx)
                        async with timeit("store.sql.commit"):
                            await tx.flush()
                except IntegrityError as e:
                    raise TransactionConflict(str(e.orig)) from e
                except (OperationalError, DBAPIError) as e:
                    if _is_retryable(e):
                        raise TransactionConflict(str(e.orig)) from e
                    raise
        return result

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        model = _model(collection)
        async with self.db.sessions() as session:
            row = await session.get(model, key)
            return row.to_doc() if row is not None else None

    async def put(self, collection: str, key: str,
                  value: Dict[str, Any]) -> None:
        model = _model(collection)
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    await session.merge(model.from_doc(key, value))

    async def add(self, collection: str, value: Dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        model = _model(collection)
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    session.add(model.from_doc(key, value))
        return key

    async def find(self, collection: str, field: str, value: Any,
                   limit: int = 1) -> List[Dict[str, Any]]:
        model = _model(collection)
        col = model.column_for(field)
        async with self.db.sessions() as session:
            rows = (await session.execute(
                select(model).where(col == value)
                .order_by(model.created_at.asc())
                .limit(limit)
            )).scalars().all()
        return [r.to_doc() for r in rows]

    async def recent(self, collection: str,
                     limit: int = 200) -> List[Dict[str, Any]]:
        model = _model(collection)
        async with self.db.sessions() as session:
            rows = (await session.execute(
                select(model).order_by(model.created_at.desc()).limit(limit)
            )).scalars().all()
        return [r.to_doc() for r in rows]
