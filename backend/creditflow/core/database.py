"""Async database engine, session factory and declarative base."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from creditflow.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def _engine_options(url: str) -> dict:
    options: dict = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Session context for background tasks.

    Rolls back on error; commits are left to the services, which
    own their transaction boundaries.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
