from __future__ import annotations

import os
import tempfile

# Settings are read at import time by the persistence layer; pin the test environment first.
_DB_DIR = tempfile.mkdtemp(prefix="tenantlink-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'tenantlink.db')}"
os.environ["RL_COUNTER_BACKEND"] = "memory"
os.environ["PROVISIONING_EXECUTION_MODE"] = "inline"
os.environ["CRYPTO_MASTER_KEY"] = "3f" * 32
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUTH_DEV_BYPASS"] = "false"
os.environ["AUTH_CACHE_TTL_S"] = "0"

import pytest

from tenantlink.apps.api.deps import reset_auth_cache
from tenantlink.core.config import get_settings
from tenantlink.domain.models import Base
from tenantlink.persistence.db import dispose_engine, engine
from tenantlink.providers.drivers.registry import set_driver_registry
from tenantlink.services.access_gate import reset_access_gate_state
from tenantlink.services.crypto.secrets import reset_key_cache
from tenantlink.services.provisioning_queue import reset_queue_state
from tenantlink.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so ledger rows never leak between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Each test runs on its own event loop.
    await dispose_engine()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Module-level caches (settings, counters, registry) must not carry env overrides across tests.
    yield
    get_settings.cache_clear()
    reset_key_cache()
    reset_access_gate_state()
    reset_queue_state()
    reset_telemetry()
    reset_auth_cache()
    set_driver_registry(None)
