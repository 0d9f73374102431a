"""
Test configuration for MetricPilot tests.

sys.path is configured so 'from metricpilot...' resolves whether pytest runs
from the project root or from metricpilot/. DATABASE_URL is pointed at an
in-memory SQLite database before any metricpilot module reads settings.

Shared fixtures:
  - make_response  build a parsed generation response from a camelCase dict
  - mock_client    AsyncMock standing in for GenerationClient
  - store          SessionStore over a fresh in-memory SQLite database
  - fake_redis     in-memory stand-in for the few redis.asyncio calls cache.py makes
"""
import os
import sys
import time
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

_package_dir = Path(__file__).parent.parent        # .../metricpilot/
_project_root = _package_dir.parent                # .../

if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from metricpilot.cache import RELEASE_LOCK_SCRIPT  # noqa: E402
from metricpilot.database import Base  # noqa: E402
import metricpilot.models  # noqa: E402,F401
from metricpilot.tests.factories import response  # noqa: E402
from metricpilot.store import SessionStore  # noqa: E402


# ---------------------------------------------------------------------------
# Generation client
# ---------------------------------------------------------------------------

@pytest.fixture
def make_response():
    return response


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock()
    client.send = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# SessionStore over in-memory SQLite
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def store():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


# ---------------------------------------------------------------------------
# Redis stand-in
# ---------------------------------------------------------------------------

class FakeRedis:
    """get / set(nx, ex) / setex / delete with expiry plus the lock-release eval, all in memory."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._data[key][0] if self._alive(key) else None

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        if nx and self._alive(key):
            return None
        self._data[key] = (value, time.monotonic() + ex if ex else None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._data[key] = (value, time.monotonic() + ttl)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def eval(self, script: str, numkeys: int, *keys_and_args: str) -> int:
        """Only the lock-release script is understood: compare-and-delete."""
        if script != RELEASE_LOCK_SCRIPT:
            raise NotImplementedError("FakeRedis only runs the lock-release script")
        key, token = keys_and_args[0], keys_and_args[numkeys]
        if await self.get(key) == token:
            return await self.delete(key)
        return 0

    def keys(self) -> list[str]:
        return [k for k in list(self._data) if self._alive(k)]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
