"""
Async database engine, session factory and FastAPI dependencies.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session for reads and profile-only writes."""
    async with async_session_maker() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Session factory used by ledger transactions (one session per attempt)."""
    return async_session_maker
