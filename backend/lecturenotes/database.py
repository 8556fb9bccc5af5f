"""
Lecture Notes Backend — Database Session Management
=====================================================

What:  Async SQLAlchemy engine, session factory, and FastAPI dependency.
Why:   Centralizes all database connection logic in one place.
How:   Creates an async engine with connection pooling, provides a session
       dependency that auto-commits on success and auto-rolls-back on error.
Who:   Route handlers via Depends(); the pipeline and usage tracker through
       `async_session_factory` because they outlive a single request.

Connection Pooling Strategy:
    pool_size=20, max_overflow=10, pool_pre_ping, pool_recycle=3600 on
    PostgreSQL. SQLite (tests, local runs) manages its own pool, so the
    pool arguments are only passed for server databases.
"""

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from lecturenotes.config import settings


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with pool settings appropriate for the backend."""
    kwargs: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(url, **kwargs)


# ── Engine Configuration ──────────────────────────────────────────────────
engine = build_engine(settings.database_url)

# ── Session Factory ───────────────────────────────────────────────────────
# expire_on_commit=False: the pipeline keeps reading job attributes after
# each stage commit; expiring them would trigger lazy loads outside a session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp column.

    PostgreSQL keeps the offset; SQLite hands back naive values. Every value
    read is normalized to an aware UTC datetime so comparisons against
    `datetime.now(timezone.utc)` never mix naive and aware objects.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("timezone", True)
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    """Current time as an aware UTC datetime (column default helper)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object so Alembic autogenerate sees every table.
    """
    pass


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Commits when the handler returns, rolls back on any exception, and always
    closes the session so the connection goes back to the pool.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            # Roll back for ANY failure, including non-DB bugs after a query
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def dispose_engine() -> None:
    """Close all pooled connections during application shutdown."""
    await engine.dispose()
