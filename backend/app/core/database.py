"""Database engine and session management."""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def _engine_options(url: str) -> dict:
    """Build engine options bounding connection and statement time."""
    if url.startswith("sqlite"):
        return {}
    options = {
        "pool_pre_ping": True,
        "pool_timeout": settings.DB_POOL_TIMEOUT_SECONDS,
    }
    if "+asyncpg" in url:
        options["connect_args"] = {
            "command_timeout": settings.DB_COMMAND_TIMEOUT_SECONDS,
            "timeout": settings.DB_POOL_TIMEOUT_SECONDS,
        }
    return options


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_options(settings.DATABASE_URL),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session.

    Services commit explicitly; anything left uncommitted when the request
    ends is rolled back on close.
    """
    async with async_session_maker() as session:
        yield session
