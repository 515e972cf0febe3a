"""
Database engine, sessions and dialect helpers.

PostgreSQL (asyncpg) in deployments, SQLite (aiosqlite) in tests. Assignment
writes rely on INSERT ... ON CONFLICT, which both dialects provide through
`dialect_insert`.

SECURITY: statement echo follows settings.sqlalchemy_echo (off in production)
and the connection string is never logged.
"""

import logging
import time
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)

POOL_OPTIONS = {
    "pool_size": 20,
    "max_overflow": 10,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}


class Base(DeclarativeBase):
    pass


def install_slow_query_logging(sync_engine: Engine, threshold_ms: int) -> None:
    """Warn about statements slower than threshold_ms, truncated, without parameters."""

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.monotonic())

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany):
        starts = conn.info.get("query_start_time")
        if not starts:
            return
        duration_ms = (time.monotonic() - starts.pop()) * 1000
        if duration_ms >= threshold_ms:
            truncated = statement[:200] + ("..." if len(statement) > 200 else "")
            logger.warning(
                "Slow query (%.0fms, %d params): %s",
                duration_ms, len(parameters) if parameters else 0, truncated,
            )


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.sqlalchemy_echo,
    future=True,
    **({} if settings.DATABASE_URL.startswith("sqlite") else POOL_OPTIONS),
)
install_slow_query_logging(engine.sync_engine, settings.SLOW_QUERY_THRESHOLD_MS)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def dialect_insert(db: AsyncSession, table):
    """INSERT construct with on_conflict_do_update / on_conflict_do_nothing for the session's dialect."""
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect_name}")


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session.

    Services commit their own units of work; anything left uncommitted when a
    request fails is rolled back here.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create missing tables. Alembic owns schema changes after the first deploy."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
