from __future__ import annotations

import asyncio
import os
import tempfile

import pytest

# Settings are read when cero.persistence.db is first imported; point them at a scratch store first.
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="cero-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DATA_DIR}/test.db"
os.environ["LOG_PATH"] = ""
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_REQUESTS_PER_MINUTE"] = "100000"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["CSRF_SECRET"] = "test-csrf-secret"

from cero.apps.api.rate_limit import reset_rate_limiter_state  # noqa: E402
from cero.core.config import get_settings  # noqa: E402
from cero.persistence.db import engine  # noqa: E402
from cero.persistence.schema import create_schema  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def prepared_schema() -> None:
    async def _prepare() -> None:
        await create_schema(engine)
        await engine.dispose()

    asyncio.run(_prepare())


@pytest.fixture(autouse=True)
def fresh_settings_and_limiter() -> None:
    # Tests that monkeypatch env vars must not leak cached settings or buckets.
    get_settings.cache_clear()
    reset_rate_limiter_state()
    yield
    get_settings.cache_clear()
    reset_rate_limiter_state()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
