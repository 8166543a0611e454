"""
Database session management.

Two entry points:
  get_db()        FastAPI dependency, one transaction per request.
  get_admin_db()  async context manager for workers and background jobs;
                  commits on clean exit, rolls back on exception.

Chunk storage opens its own short transactions per insert batch (see
docpipe/storage/chunks.py) so a failed batch never rolls back batches that
already landed.
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

from docpipe.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,          # detect stale connections before use
    pool_recycle=3600,           # recycle connections every hour
    echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
)

# Session factory: expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Worker / background session
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /health endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
