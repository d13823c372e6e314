"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
# Point at a config file that doesn't exist so a developer's settings never leak in
os.environ["AGORA_CONFIG"] = "/nonexistent/agora-test-config.yaml"
os.environ["AGORA_DB"] = ":memory:"
os.environ["AGORA_REAP_INTERVAL"] = "0"
for _name in ("AGORA_PUSH_ENDPOINT", "AGORA_REGISTRY", "AGORA_AUTH_MODULE", "TURSO_URL"):
    os.environ.pop(_name, None)


import pytest
from agora import accounts, cache, config, db, registry, servers, transport
from agora.metrics import metrics

pytest_plugins = ["agora.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database and process-wide singletons before each test function.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    config.reset_settings()
    conn = db.get_connection()
    # Temporarily disable foreign keys to allow dropping in any order
    conn.execute("PRAGMA foreign_keys=OFF")
    db.reset_db(conn)
    conn.execute("PRAGMA foreign_keys=ON")

    registry.reset_registry()
    transport.reset_transport()
    cache.clear_all_caches()
    metrics.reset()
    yield
    db.close_db()  # Cleanup after test


@pytest.fixture
def make_user():
    """Factory that registers a user and returns {token, user, headers}."""
    counter = {"n": 0}

    def _make(username: str | None = None, password: str = "correct-horse") -> dict:
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        result = accounts.register(f"{username}@example.com", username, password)
        result["headers"] = {"Authorization": f"Bearer {result['token']}"}
        return result

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def server_setup(alice):
    """A server owned by alice, with its default #general channel."""
    server = servers.create_server(alice["user"]["id"], "alice", "Test Server")
    return {"server": server, "channel": server["channels"][0], "owner": alice}
