"""
Database engine and session management.

Flow:
  1. create_app() builds the engine once from Settings (build_engine).
  2. A session factory (async_sessionmaker) is handed to every service.
  3. Services open one short-lived session per unit of work:

        async with self._sessions() as db, db.begin():
            ...

     The transaction commits on block exit and rolls back on exception,
     so a state change plus its payload is always one atomic write.

SQLite (aiosqlite) is supported for local development and tests;
PostgreSQL (asyncpg) is the production target.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from docchat.core.config import Settings
from docchat.models.documents import Base

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    if settings.database_url.startswith("sqlite"):
        # SQLite file locking does the serialization; a pool only adds
        # connections that contend for the same lock.
        return create_async_engine(
            settings.database_url,
            poolclass=NullPool,
            echo=settings.db_echo_sql,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet. Schema migrations are managed externally."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured | tables=%s", sorted(Base.metadata.tables))


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
