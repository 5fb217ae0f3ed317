"""
Engine and session factory management.

PostgreSQL (asyncpg) is the production backend. SQLite (aiosqlite) is used
for tests and local runs; it gets a lock wait instead of pool sizing, since
concurrent verifications serialize on its single writer.
"""
from typing import Any, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_reconciliation.config import get_settings
from payment_reconciliation.database.models import Base

SQLITE_LOCK_TIMEOUT_SECONDS = 30

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_for_url(url: str, echo: bool = False, **pool_kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL
        **pool_kwargs: Pool sizing, ignored for SQLite

    Returns:
        AsyncEngine: Engine bound to the URL
    """
    if make_url(url).get_backend_name() == "sqlite":
        return create_async_engine(
            url, echo=echo, connect_args={"timeout": SQLITE_LOCK_TIMEOUT_SECONDS}
        )
    return create_async_engine(url, echo=echo, pool_pre_ping=True, **pool_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are handed to callers after commit, so attributes must stay loaded
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_recycle=3600,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create missing ledger and directory tables.

    Args:
        engine: Engine to use, defaults to the process-wide engine
    """
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
