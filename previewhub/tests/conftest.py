from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from previewhub.core.config import get_settings
from previewhub.domain.models import Base
from previewhub.persistence.db import create_engine, create_session_factory
from previewhub.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path: Path) -> None:
    # Every test gets its own SQLite file and the in-process backends.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'previewhub.db'}")
    monkeypatch.setenv("COMPUTE_PROVIDER", "fake")
    monkeypatch.setenv("REALTIME_TRANSPORT", "local")
    monkeypatch.setenv("RL_BACKEND", "memory")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine():
    engine = create_engine(settings=get_settings())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)
