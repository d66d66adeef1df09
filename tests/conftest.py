import pytest
from fastapi.testclient import TestClient

from remote_bridge import main

TOKEN = "test-token-0123456789abcdef0123456789abcdef"


@pytest.fixture
def spawn_calls(monkeypatch):
    """Replace the gateway's spawn with a recorder that never starts a process."""
    calls = []

    async def fake_spawn(*args, **kwargs):
        calls.append((args, kwargs))
        raise AssertionError("spawn should not have been called")

    monkeypatch.setattr(main, "spawn", fake_spawn)
    return calls


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "BRIDGE_TOKEN", TOKEN)
    monkeypatch.setattr(main, "ALLOWED_TOOLS", None)
    monkeypatch.setattr(main, "ALLOWED_FILE_ROOTS", [])
    with TestClient(main.app) as test_client:
        test_client.headers["Authorization"] = f"Bearer {TOKEN}"
        yield test_client
