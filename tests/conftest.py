"""
Pytest fixtures for IVS tests. Coroutine tests run through asyncio.run inside plain
test functions; fixtures here only build loop-independent objects.
"""

from __future__ import annotations

import pytest

from backend_ivs.config.settings import get_settings
from backend_ivs.engine.memory import InMemoryEngine

EXAMPLE_USERS = (1, 2, 3, 4, 5)
EXAMPLE_CONTACTS = ((1, 2), (1, 3), (2, 4), (3, 5))


@pytest.fixture
def example_engine():
    """In-memory engine with the five-user example: user 1 infected, scores computed at dMax=2."""
    engine = InMemoryEngine()
    for u in EXAMPLE_USERS:
        engine.register_user(u)
    for a, b in EXAMPLE_CONTACTS:
        engine.add_contact(a, b)
    for u in EXAMPLE_USERS:
        engine.set_health_status(u, 1 if u == 1 else 0)
    engine.compute_ivs(2)
    return engine


@pytest.fixture
def clean_settings(monkeypatch, tmp_path):
    """Isolate settings from the developer's .env and clear the settings cache."""
    for name in (
        "IVS_RPC_URL",
        "IVS_CONTRACT_ADDRESS",
        "IVS_SENDER_ADDRESS",
        "IVS_ABI_PATH",
        "IVS_DECRYPT_TIMEOUT_SEC",
        "IVS_POLL_INTERVAL_SEC",
        "IVS_RECEIPT_TIMEOUT_SEC",
        "IVS_LOG_LOOKBACK_BLOCKS",
        "IVS_RPC_TIMEOUT_SEC",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("backend_ivs.config.env._ENV_PATH", tmp_path / ".env")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
