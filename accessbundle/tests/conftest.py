from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from accessbundle.core.config import get_settings
from accessbundle.persistence.db import build_session_factory, create_schema


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; tests that patch env must see fresh values.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    # One sqlite file per test keeps integration tests isolated without cleanup queries.
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'accessbundle.db'}")
    await create_schema(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)
