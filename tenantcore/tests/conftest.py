from __future__ import annotations

from typing import AsyncIterator, Iterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from tenantcore.core.config import get_settings
from tenantcore.domain.models import Base
from tenantcore.persistence.db import build_engine, build_sessionmaker
from tenantcore.services.gateway import AccessGateway


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    # Settings are cached process-wide; env overrides from one test must not leak into the next.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def bypass_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BYPASS_ENABLED", "true")
    get_settings.cache_clear()


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    # One shared in-memory connection so every session sees the same database.
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
def gateway(session_factory: async_sessionmaker[AsyncSession]) -> AccessGateway:
    return AccessGateway(session_factory)
