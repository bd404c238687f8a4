# tests/conftest.py
"""
Global test bootstrap
- Makes SlowAPI rate-limiting test-friendly (bypass by default)
- Keeps limiter counters isolated per test run (namespace)
- Builds memory-backed `PasskeyServices` and an app wired to them
- Exposes a mock Redis client, an audit record collector and an opt-in
  ratelimit_on fixture
"""

from __future__ import annotations

import os
import random

# ──────────────────────────────────────────────────────────────────────────────
# 🌱 Test env (set BEFORE importing the app so import-time reads see it)
# ──────────────────────────────────────────────────────────────────────────────
os.environ.setdefault("RATELIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("RATE_LIMIT_TEST_BYPASS", "1")
os.environ.setdefault("RATE_LIMIT_NAMESPACE", f"pytest-{random.getrandbits(32)}")
os.environ.setdefault("DEFAULT_RATE_LIMIT", "10000/minute")
os.environ.setdefault("PASSKEY_FAILURE_JITTER_MS", "0,0")
os.environ.setdefault("ENABLE_DOCS", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from loguru import logger  # noqa: E402

# ──────────────────────────────────────────────────────────────────────────────
# 📦 Pull in the rest of the fixtures (stores, app, users, redis)
# ──────────────────────────────────────────────────────────────────────────────
from tests.fixtures.app import *         # noqa: F401,F403,E402
from tests.fixtures.redis import *       # noqa: F401,F403,E402
from tests.fixtures.users import *       # noqa: F401,F403,E402


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


# ──────────────────────────────────────────────────────────────────────────────
# 🚦 Opt-in fixture to actually enforce rate limits in a specific test
#    Usage:
#       async def test_something_rate_limited(ratelimit_on, async_client): ...
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def ratelimit_on(monkeypatch):
    """
    Temporarily enable rate limiting for tests that assert 429s; the limiter
    storage is reset so earlier tests don't count.
    """
    from passkeys.core.limiter import limiter

    limiter.reset()
    monkeypatch.setenv("RATE_LIMIT_TEST_BYPASS", "0")
    yield
    monkeypatch.setenv("RATE_LIMIT_TEST_BYPASS", "1")
    limiter.reset()


# ──────────────────────────────────────────────────────────────────────────────
# 📝 Audit trail collector
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def audit_records():
    """Collect loguru records bound with `audit=True` (newest last)."""
    records = []
    sink_id = logger.add(lambda m: records.append(m.record), level="DEBUG", filter=lambda r: r["extra"].get("audit"))
    yield records
    logger.remove(sink_id)
