"""
Database engine and session factories.

The API process shares one pooled engine. Celery workers run every task
in a fresh event loop (see workers.tasks.run_async), and asyncpg
connections cannot cross loops, so the worker builds its own engine with
NullPool instead of reusing this one.

Sessions are short: the document repository opens one transaction per
status transition so a long embedding call never holds a row lock.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from kb_ingest.core.config import Settings, settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(cfg: Settings, *, null_pool: bool = False) -> AsyncEngine:
    if null_pool:
        return create_async_engine(
            cfg.database_url,
            poolclass=NullPool,
            echo=cfg.db_echo_sql,
        )
    return create_async_engine(
        cfg.database_url,
        pool_size=cfg.db_pool_size,
        max_overflow=cfg.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,
        echo=cfg.db_echo_sql,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = build_engine(settings)
AsyncSessionLocal = build_session_factory(engine)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session wrapped in one transaction."""
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transaction that commits on exit and rolls back on error."""
    async with (factory or AsyncSessionLocal)() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(bind: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready and the startup check."""
    try:
        async with (bind or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
