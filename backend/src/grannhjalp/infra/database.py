"""Async database engine and session management."""

import logging

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from grannhjalp.app.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


settings = get_settings()

# Auto-detect driver from DATABASE_URL
_is_sqlite = "sqlite" in settings.database_url
_connect_args = {}
if _is_sqlite:
    _connect_args["check_same_thread"] = False
    _connect_args["timeout"] = 30  # Wait up to 30s for write lock (default 5s)

_engine_kwargs = {
    "echo": False,
    "connect_args": _connect_args,
}
if not _is_sqlite:
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: yield an async database session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


# Additive schema changes made after the first release, appended as they ship.
# Each statement is applied once; "duplicate column" failures mean it already ran.
_MIGRATIONS: list[str] = []


async def apply_migrations(target_engine, statements) -> int:
    """Run each statement in its own transaction. Returns how many applied."""
    applied = 0
    for stmt in statements:
        try:
            async with target_engine.begin() as conn:
                await conn.execute(text(stmt))
            applied += 1
        except OperationalError:
            logger.debug("Migration already applied: %s", stmt)
    return applied


async def init_db():
    """Create all tables (for local dev) and apply additive migrations."""
    import grannhjalp.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # WAL allows concurrent reads alongside the single writer, which webhook
    # deliveries and user requests hit at the same time.
    if _is_sqlite:
        async with engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))

        await apply_migrations(engine, _MIGRATIONS)
