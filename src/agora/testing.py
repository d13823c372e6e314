"""Pytest fixtures for testing with agora.

Usage in conftest.py:
    pytest_plugins = ["agora.testing"]

Available fixtures:
    - memory_registry: Fresh InMemoryConnectionRegistry
    - database_registry: DatabaseConnectionRegistry over the configured DB
    - registry_any_backend: Parametrized over both registry backends
    - recording_transport: RecordingTransport that captures pushed payloads
"""

from __future__ import annotations

import json
from typing import Any, Generator

import pytest

from .registry import (
    ConnectionRegistry,
    DatabaseConnectionRegistry,
    InMemoryConnectionRegistry,
    reset_registry,
    set_registry,
)
from .transport import ConnectionGone, DeliveryError, PushTransport, reset_transport, set_transport


class RecordingTransport(PushTransport):
    """Transport that records deliveries instead of sending them.

    Connection ids in ``gone`` raise ConnectionGone and ids in ``failing``
    raise DeliveryError; every other push is recorded in ``sent``.
    """

    def __init__(self, gone: set[str] | None = None, failing: set[str] | None = None):
        self.gone = set(gone or ())
        self.failing = set(failing or ())
        self.sent: list[tuple[str, bytes]] = []
        self.attempts: list[str] = []
        self.closed = False

    async def post_to_connection(self, connection_id: str, data: bytes) -> None:
        self.attempts.append(connection_id)
        if connection_id in self.gone:
            raise ConnectionGone(connection_id, "gone")
        if connection_id in self.failing:
            raise DeliveryError(connection_id, "simulated failure")
        self.sent.append((connection_id, data))

    async def close(self) -> None:
        self.closed = True

    def recipients(self) -> list[str]:
        """Connection ids that received a payload, in delivery order."""
        return [connection_id for connection_id, _ in self.sent]

    def envelopes(self) -> list[dict[str, Any]]:
        """Decoded payloads, in delivery order."""
        return [json.loads(data) for _, data in self.sent]


@pytest.fixture
def memory_registry() -> Generator[InMemoryConnectionRegistry, None, None]:
    """Fresh in-memory registry, installed as the process registry.

    Example:
        async def test_something(memory_registry):
            await memory_registry.connect("c1", "user-1")
            await memory_registry.subscribe("c1", "channel-1")
    """
    registry = InMemoryConnectionRegistry()
    set_registry(registry)
    yield registry
    reset_registry()


@pytest.fixture
def database_registry() -> Generator[DatabaseConnectionRegistry, None, None]:
    """Registry backed by the connections tables of the configured DB.

    The schema must already exist (see the project's reset_database fixture).
    """
    registry = DatabaseConnectionRegistry()
    set_registry(registry)
    yield registry
    reset_registry()


@pytest.fixture(params=["memory", "database"])
def registry_any_backend(request: Any) -> Generator[ConnectionRegistry, None, None]:
    """Parametrized fixture that runs tests against both registry backends.

    Example:
        async def test_works_everywhere(registry_any_backend):
            await registry_any_backend.connect("c1", "user-1")
            # This test runs twice: once per backend
    """
    if request.param == "memory":
        registry: ConnectionRegistry = InMemoryConnectionRegistry()
    elif request.param == "database":
        registry = DatabaseConnectionRegistry()
    else:
        raise ValueError(f"Unknown registry backend: {request.param}")

    set_registry(registry)
    yield registry
    reset_registry()


@pytest.fixture
def recording_transport() -> Generator[RecordingTransport, None, None]:
    """RecordingTransport installed as the process transport.

    Example:
        async def test_push(memory_registry, recording_transport):
            await fanout.broadcast(fanout.NEW_MESSAGE, msg, "channel-1")
            assert recording_transport.recipients() == ["c1"]
    """
    transport = RecordingTransport()
    set_transport(transport)
    yield transport
    reset_transport()
