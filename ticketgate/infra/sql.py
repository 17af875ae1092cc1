import os
import asyncio
import logging
from typing import AsyncContextManager, Callable, Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

log = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: bounds concurrent DB work to what the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str):
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    # every statement carries a timeout so a stuck batch fails fast
    command_timeout = float(os.getenv("DB_COMMAND_TIMEOUT", "30"))

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            connect_args={"command_timeout": command_timeout},
        )
    elif db_url.startswith("sqlite+aiosqlite://"):
        kw.update(connect_args={"timeout": command_timeout})

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        busy_ms = int(command_timeout * 1000)

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute(f"PRAGMA busy_timeout={busy_ms};")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # DB-GATE: per-engine gate, defaults to pool_size
    if pool_size is None:
        # sqlite
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        # postgres
        gate_limit = int(
            os.getenv("DB_GATE_LIMIT", pool_size)
        )

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    # tiny helper for `async with gated(): ...`
    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


class Database:
    """
    Persistence handle injected into every component.

    open() on service start, close() on stop. Components ask for
    `session()` and wrap their work in `gated()` + `session.begin()`.
    """

    def __init__(self, database_url: str) -> None:
        self.url = database_url
        self.engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None
        self._gated: Optional[Gated] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    async def open(self, create_schema: bool = True) -> "Database":
        if self.is_open:
            return self
        self.engine, self._sessions, _, self._gated = make_async_engine(
            self.url
        )
        if create_schema:
            from ..model.db import Base
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        log.info("database opened: %s", self.engine.url.render_as_string())
        return self

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self._sessions = None
        self._gated = None
        log.info("database closed")

    def session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("Database is not open")
        return self._sessions()

    def gated(self) -> AsyncContextManager[None]:
        if self._gated is None:
            raise RuntimeError("Database is not open")
        return self._gated()
