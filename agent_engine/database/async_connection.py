"""
Async database connection using SQLAlchemy 2.0
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import settings
from agent_engine.database.tables import Base


def get_async_database_url(url: str) -> str:
    """Convert a sync database URL into its async driver form"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("mysql://"):
        return url.replace("mysql://", "mysql+aiomysql://", 1)
    elif url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        get_async_database_url(url),
        poolclass=NullPool,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = create_engine_for(settings.database_url, echo=settings.sql_echo)

AsyncSessionLocal = create_session_factory(async_engine)


@asynccontextmanager
async def get_async_db_context(session_factory: async_sessionmaker = None) -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on success and rolls back on error"""
    async with (session_factory or AsyncSessionLocal)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_async_db(engine: AsyncEngine = None):
    """Create all tables"""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_async_db():
    await async_engine.dispose()
