"""Async engine, session factory and the DB gate.

Every store transaction enters the gate, a per-engine semaphore sized to the
connection pool (10 on SQLite unless DB_GATE_LIMIT says otherwise).
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from sqlalchemy.pool import NullPool

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _engine_options(url: str, pool: Mapping[str, int]) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg://"):
        opts.update(
            pool_size=pool.get("pool_size", 10),
            max_overflow=pool.get("max_overflow", 10),
            pool_timeout=pool.get("pool_timeout", 30),
        )
    elif url.startswith("sqlite+aiosqlite://"):
        # aiosqlite connections are bound to the loop that opened them
        opts["poolclass"] = NullPool
    return opts


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(pragma)
    cur.close()


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    async with sem:
        yield


def make_async_engine(database_url: str,
                      pool: Optional[Mapping[str, int]] = None):
    """Returns (engine, SessionAsync, db_gate, gated)."""
    pool = pool or {}
    url = async_url(database_url)
    opts = _engine_options(url, pool)

    engine = create_async_engine(url, **opts)
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate_limit = pool.get("gate_limit", opts.get("pool_size", 10))
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated
