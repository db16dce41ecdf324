from __future__ import annotations

import asyncio
import os
import tempfile

# Point the engine at a throwaway sqlite file before keysync.persistence.db is imported.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="keysync-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "KEYSYNC_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'keysync.db')}",
)
os.environ.setdefault("LOCK_BACKEND", "db")
os.environ.setdefault("ALERTS_ENABLED", "false")

import pytest  # noqa: E402

from keysync.core.config import get_settings  # noqa: E402
from keysync.domain.models import Base  # noqa: E402
from keysync.persistence.db import engine  # noqa: E402


@pytest.fixture(scope="session")
def event_loop() -> asyncio.AbstractEventLoop:
    # Use a session-wide loop so pooled connections stay bound to one loop.
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests flip settings through monkeypatch.setenv; drop the cached instance on both sides.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
