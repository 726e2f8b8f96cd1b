"""Shared fixtures.

Settings are read at import time, so the environment defaults are set
before anything from ``creditflow`` is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./creditflow-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from contextlib import asynccontextmanager
from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from creditflow.core.database import Base
from creditflow.modules.billing import models as billing_models  # noqa: F401
from creditflow.modules.integration import models as integration_models  # noqa: F401


@pytest.fixture
def database_factory(tmp_path):
    """Return a factory of fresh file-backed SQLite databases.

    Property tests call it once per example so every example starts
    from empty tables.
    """
    counter = {"n": 0}

    @asynccontextmanager
    async def factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
        counter["n"] += 1
        path = tmp_path / f"creditflow-{counter['n']}.db"
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return factory


@pytest_asyncio.fixture
async def session_maker(database_factory) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    async with database_factory() as maker:
        yield maker


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncIterator[AsyncSession]:
    async with session_maker() as session:
        yield session
