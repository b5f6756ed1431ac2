"""Engine and request-scoped sessions."""
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ledger.infra.db.base import (
    async_pg_connect_args,
    async_pg_url_without_sslmode,
    normalize_async_pg_url,
)
from ledger.settings import settings

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Async engine for ``url``; Postgres URLs are moved onto asyncpg."""
    url = normalize_async_pg_url(url)
    if url.startswith("postgresql+asyncpg://"):
        # NullPool: no connection reuse across cancelled requests.
        return create_async_engine(
            async_pg_url_without_sslmode(url),
            connect_args=async_pg_connect_args(url),
            echo=echo,
            poolclass=NullPool,
        )
    return create_async_engine(url, echo=echo)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use from settings."""
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_engine(settings.database_url, echo=settings.database_echo)
        _sessionmaker = make_sessionmaker(_engine)
    return _engine


def get_sessionmaker() -> async_sessionmaker:
    get_engine()
    return _sessionmaker


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with get_sessionmaker()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
