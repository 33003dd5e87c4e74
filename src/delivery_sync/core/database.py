"""Async SQLAlchemy engine, declarative base and session factory.

Provides:
- Base: Declarative base for all tables (projects live in the public schema)
- get_session(): AsyncSession generator used as the repository session_factory
- init_db(): Create tables, retrying while Postgres is still coming up
- close_db(): Dispose of the engine on shutdown
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.delivery_sync.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=5,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persistence models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


def _log_connect_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "database.connect_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


async def init_db() -> None:
    """Create tables if they don't exist.

    Retries with exponential backoff on connection errors so the service can
    start alongside a database container that is not accepting connections yet.
    """
    # Import models so their tables are registered on Base.metadata
    from src.delivery_sync.projects import models  # noqa: F401

    settings = get_settings()
    engine = get_engine()

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(settings.DATABASE_CONNECT_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OperationalError, OSError)),
        before_sleep=_log_connect_retry,
        reraise=True,
    ):
        with attempt:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    logger.info("database.initialized")


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
