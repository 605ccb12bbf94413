from __future__ import annotations

import os
import tempfile

# Point the app at a throwaway sqlite database before any planguard module reads settings.
_DB_DIR = tempfile.mkdtemp(prefix="planguard-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'planguard.db')}"
os.environ["SUBSCRIPTION_SWEEPER_ENABLED"] = "false"
os.environ["AUTH_DEV_BYPASS"] = "false"

import pytest  # noqa: E402

from planguard.apps.api.deps import reset_auth_cache  # noqa: E402
from planguard.domain.models import Base  # noqa: E402
from planguard.persistence.db import engine  # noqa: E402
from planguard.services.entitlements import reset_entitlements_cache  # noqa: E402
from planguard.services.subscriptions import reset_subscription_service  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose the engine so connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_entitlements_cache()
    reset_auth_cache()
    reset_subscription_service()
    yield
    await engine.dispose()
