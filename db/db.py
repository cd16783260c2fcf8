"""
SQL-backed key-value store for reminders.
Uses SQLAlchemy 2.0 async (asyncpg on Postgres, aiosqlite for local runs).

One table, ``kv_entries``, holds every key: the primary key is the
byte-comparable encoding from :mod:`db.keys`, so ``ORDER BY key`` and range
predicates on it give tuple order.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import JSON, LargeBinary, String, delete, event, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.errors import TransientStoreError
from db.keys import Key, decode_key, encode_key
from db.store import Check, Entry, KvStore, MemoryKvStore, Write, scan_bounds

_LOGGER = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


class KvEntry(Base):
    __tablename__ = "kv_entries"

    key:          Mapped[bytes] = mapped_column(LargeBinary, primary_key=True)
    value:        Mapped[Any]   = mapped_column(JSON)
    versionstamp: Mapped[str]   = mapped_column(String(32))

    def to_entry(self) -> Entry:
        return Entry(key=decode_key(self.key), value=self.value, versionstamp=self.versionstamp)


# ──────────────────────────────────────────────────────────────────────
# 2. Engine helpers
# ──────────────────────────────────────────────────────────────────────
def build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


def _serialise_sqlite_writers(engine: AsyncEngine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite/aiosqlite only emit BEGIN before the first DML statement, which
    would leave the version checks outside the write transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    url = build_url(url)
    if url.startswith("sqlite"):
        engine = create_async_engine(url, **kwargs)
        _serialise_sqlite_writers(engine)
        return engine
    return create_async_engine(url, pool_size=5, max_overflow=5, **kwargs)


# ──────────────────────────────────────────────────────────────────────
# 3. Store
# ──────────────────────────────────────────────────────────────────────
class SqlKvStore(KvStore):
    """:class:`KvStore` over a ``kv_entries`` table.

    ``commit`` runs in a single transaction. Rows checked against a
    versionstamp are read ``FOR UPDATE`` and then updated; keys checked as
    absent are plain INSERTs, so a concurrent insert of the same key shows up
    as an ``IntegrityError`` and is reported as a failed check. On SQLite
    every transaction is ``BEGIN IMMEDIATE``, which serialises writers.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session_maker = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str | None = None) -> "SqlKvStore":
        return cls(create_engine(url))

    async def create_all(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: Key) -> Entry | None:
        try:
            async with self._session_maker() as s:
                row = await s.get(KvEntry, encode_key(key))
                return row.to_entry() if row is not None else None
        except DBAPIError as exc:
            raise TransientStoreError(f"get failed: {exc}") from exc

    async def _check_versions(self, s: AsyncSession, checks: Sequence[Check]) -> bool:
        for key, expected in checks:
            res = await s.execute(
                select(KvEntry.versionstamp)
                .where(KvEntry.key == encode_key(key))
                .with_for_update()
            )
            if res.scalar_one_or_none() != expected:
                _LOGGER.debug("commit check failed for %r", key)
                return False
        return True

    async def commit(
        self,
        checks: Sequence[Check] = (),
        sets: Sequence[Write] = (),
        deletes: Sequence[Key] = (),
    ) -> bool:
        versionstamp = uuid4().hex
        # FOR UPDATE cannot lock a row that does not exist yet, so keys
        # expected to be absent are INSERTed and a racing writer trips the
        # primary key instead of being overwritten.
        must_be_new = {encode_key(key) for key, expected in checks if expected is None}
        try:
            async with self._session_maker() as s:
                async with s.begin():
                    if not await self._check_versions(s, checks):
                        return False

                    for key, value in sets:
                        row = KvEntry(key=encode_key(key), value=value, versionstamp=versionstamp)
                        if row.key in must_be_new:
                            s.add(row)
                        else:
                            await s.merge(row)
                    for key in deletes:
                        await s.execute(delete(KvEntry).where(KvEntry.key == encode_key(key)))
                    await s.flush()
        except IntegrityError:
            _LOGGER.debug("commit lost an insert race")
            return False
        except DBAPIError as exc:
            raise TransientStoreError(f"commit failed: {exc}") from exc
        return True

    async def list(self, prefix: Key, start: Key | None = None, end: Key | None = None) -> list[Entry]:
        lower, upper = scan_bounds(prefix, start, end)
        try:
            async with self._session_maker() as s:
                res = await s.execute(
                    select(KvEntry)
                    .where(KvEntry.key >= lower, KvEntry.key < upper)
                    .order_by(KvEntry.key)
                )
                return [row.to_entry() for row in res.scalars()]
        except DBAPIError as exc:
            raise TransientStoreError(f"list failed: {exc}") from exc


# ──────────────────────────────────────────────────────────────────────
# 4. Factory
# ──────────────────────────────────────────────────────────────────────
async def open_store(url: str | None = None) -> KvStore:
    """SQL store when a database URL is configured, in-memory otherwise."""
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        _LOGGER.warning("DATABASE_URL not set; using in-memory store (not shared across processes)")
        return MemoryKvStore()
    store = SqlKvStore.from_url(url)
    if store._engine.dialect.name == "sqlite":
        # Postgres schemas are managed by Alembic
        await store.create_all()
    return store
