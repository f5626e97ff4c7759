from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from ringready import config, db
from ringready.services import broadcast_hub, call_reconciler

ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "AGENT_TENANT_MAP",
    "DEFAULT_TENANT_ID",
    "VAPI_WEBHOOK_SECRET",
    "WEBHOOK_ACK_TIMEOUT",
    "RECENT_CALLS_LIMIT",
)


def _reset_singletons():
    config.get_settings.cache_clear()
    db.reset_db()
    broadcast_hub.reset_hub()
    call_reconciler.reset_reconciler()


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    _reset_singletons()
    yield
    _reset_singletons()


class ManualClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_db():
    return db.InMemoryDB()


@pytest.fixture
def client():
    from ringready.main import app
    with TestClient(app) as c:
        yield c
