"""Async SQLAlchemy engine and session factory for the ledgers.

DATABASE_URL set    asyncpg engine + session factory; the fact store,
                    idempotency store and health check all use it
DATABASE_URL unset  both exports are None and every store falls back
                    to its in-memory implementation

Sessions are opened by the stores themselves (one per transaction), not
per request: a single API call may need several transactions, e.g. an
approval commits the decision before enrolling.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the ledger tables."""


if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,
        pool_size=5,
        max_overflow=10,
        # A dropped connection surfaces as a retryable error, not a hang
        pool_pre_ping=True,
        pool_timeout=10,
    )
    async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def lifespan_db():
    """Dispose the engine on shutdown.  No-op without DATABASE_URL."""
    if engine is None:
        logger.info("No DATABASE_URL configured, ledgers are in-memory")
        yield
        return

    logger.info("Database engine created: %s", engine.url.render_as_string(hide_password=True))
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
