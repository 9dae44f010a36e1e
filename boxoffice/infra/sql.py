import os
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager, Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncSession]:
        """Gated session inside one transaction (one unit of work).

        Never nest: with a gate limit of 1 a nested begin() deadlocks.
        """
        async with self.gated():
            async with self.sessions() as session:
                async with session.begin():
                    yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_async_engine(database_url: str,
                      gate_limit: Optional[int] = None) -> Database:
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()
            # let SQLAlchemy emit BEGIN so SAVEPOINTs nest properly
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Create a per-engine gate. Default to pool_size
    if gate_limit is None:
        if pool_size is None:
            # sqlite
            gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
        else:
            # postgres
            gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine=engine, sessions=SessionAsync, gated=gated)
