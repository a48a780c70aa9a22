import asyncio

import pytest

import config
from database import InMemoryDatabase
from services.client_context import ClientContext
from services.local_state_service import LocalStateStore


async def settle(rounds: int = 10):
    """Let scheduled change notifications and the tasks they spawn run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "FIREBASE_API_KEY", None)
    monkeypatch.setattr(config, "FIREBASE_PROJECT_ID", None)
    monkeypatch.setattr(config, "JUDGE0_API_KEY", None)
    monkeypatch.setattr(config, "LOG_FILE", str(tmp_path / "test.log"))


@pytest.fixture
def state(tmp_path):
    return LocalStateStore(str(tmp_path / "state.json"))


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def context(state, db):
    return ClientContext(local_state=state, database=db, backend="memory", heartbeat_seconds=0.01)
