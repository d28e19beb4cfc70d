"""Key/value store abstraction used by the ledgers.

Inventory records, reservations, payments and orders are all persisted as
JSON-compatible dicts under string keys. Components receive a store
instance instead of owning module-level maps, so the in-memory backend used
in tests and demos can be swapped for the SQLAlchemy backend without
touching business logic.

Two backends are provided:

- ``MemoryStore``: a dict of deep copies.
- ``SqlAlchemyStore``: a single ``kv_entries`` table on an SQLAlchemy asyncio
  engine (``sqlite+aiosqlite://...`` by default, any async dialect works).

``put_many`` writes several keys atomically. Both backends expose per-key
mutual exclusion through ``lock()``. The locks are process-local; running
several processes against one database requires a database-level lock,
which this module does not attempt.
"""

import asyncio
import copy
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Iterable, Optional, Protocol

from sqlalchemy import JSON, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, mapped_column


class KeyValueStore(Protocol):
    """Port describing the storage operations the ledgers rely on."""

    async def get(self, key: str) -> Optional[dict]: ...

    async def put(self, key: str, value: dict) -> None: ...

    async def put_many(self, values: dict[str, dict]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def scan(self, prefix: str) -> list[tuple[str, dict]]: ...

    def lock(self, key: str): ...

    def lock_many(self, keys: Iterable[str]): ...

    async def close(self) -> None: ...


class KeyLocks:
    """Registry of per-key ``asyncio.Lock`` objects.

    Locks are held in a ``WeakValueDictionary`` so entries disappear once no
    coroutine holds or waits on them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._get(key)
        async with lock:
            yield

    @asynccontextmanager
    async def lock_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Acquire several keys in sorted order so concurrent callers cannot deadlock."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.lock(key))
            yield


class MemoryStore:
    """In-process store. Values are deep-copied on the way in and out."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self._locks = KeyLocks()

    async def get(self, key: str) -> Optional[dict]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: dict) -> None:
        self._data[key] = copy.deepcopy(value)

    async def put_many(self, values: dict[str, dict]) -> None:
        self._data.update(copy.deepcopy(values))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        return [(k, copy.deepcopy(v)) for k, v in sorted(self._data.items()) if k.startswith(prefix)]

    def lock(self, key: str):
        return self._locks.lock(key)

    def lock_many(self, keys: Iterable[str]):
        return self._locks.lock_many(keys)

    async def close(self) -> None:
        return None


class Base(DeclarativeBase):
    pass


class Entry(Base):
    """SQLAlchemy model for one stored value.

    Attributes:
        key: Namespaced key (e.g. ``inventory:laptop-001``), primary key.
        value: JSON document.
    """

    __tablename__ = "kv_entries"
    key = mapped_column(String(255), primary_key=True)
    value = mapped_column(JSON, nullable=False)


class SqlAlchemyStore:
    """Store backed by an SQLAlchemy asyncio engine.

    Call ``open()`` once before use to create the table.
    """

    def __init__(self, url: str, engine: Optional[AsyncEngine] = None):
        self.url = url
        self.engine = engine or create_async_engine(url, pool_pre_ping=True)
        self._sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._locks = KeyLocks()

    async def open(self) -> "SqlAlchemyStore":
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return self

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that is closed on context exit."""
        async with self._sessions() as s:
            yield s

    async def get(self, key: str) -> Optional[dict]:
        async with self.session() as s:
            obj = await s.get(Entry, key)
            return copy.deepcopy(obj.value) if obj else None

    async def put(self, key: str, value: dict) -> None:
        async with self.session() as s:
            await s.merge(Entry(key=key, value=copy.deepcopy(value)))
            await s.commit()

    async def put_many(self, values: dict[str, dict]) -> None:
        """Write every value in one transaction; on failure none is stored."""
        async with self.session() as s:
            for key, value in values.items():
                await s.merge(Entry(key=key, value=copy.deepcopy(value)))
            await s.commit()

    async def delete(self, key: str) -> None:
        async with self.session() as s:
            obj = await s.get(Entry, key)
            if obj is not None:
                await s.delete(obj)
                await s.commit()

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        async with self.session() as s:
            rows = await s.execute(select(Entry).where(Entry.key.startswith(prefix, autoescape=True)).order_by(Entry.key))
            return [(e.key, copy.deepcopy(e.value)) for e in rows.scalars()]

    def lock(self, key: str):
        return self._locks.lock(key)

    def lock_many(self, keys: Iterable[str]):
        return self._locks.lock_many(keys)

    async def close(self) -> None:
        await self.engine.dispose()


async def open_store(url: str = "") -> KeyValueStore:
    """Return a ready-to-use store for ``url`` (empty means in-memory)."""
    if not url:
        return MemoryStore()
    return await SqlAlchemyStore(url).open()
