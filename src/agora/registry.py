"""Connection registry for real-time delivery.

Tracks every live push-capable connection: who owns it, which conversations
(channel ids or DM conversation ids, one shared namespace) it is subscribed
to, and when its lease runs out.

Architecture:
    - ConnectionRegistry ABC defines the interface
    - InMemoryConnectionRegistry keeps records plus a conversation index in
      process memory (single-instance deployments)
    - DatabaseConnectionRegistry stores records in the connections tables so
      several workers can share them (pair it with HttpPushTransport)

find_subscribers is best effort: a connection subscribing while a message is
in flight may miss that message, and records whose lease lapsed can be
returned until they are reaped. Callers must tolerate stale entries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field

from . import db
from .config import DEFAULT_LEASE_SECONDS
from .errors import NotFound

logger = logging.getLogger(__name__)


@dataclass
class ConnectionRecord:
    """A registered connection and its subscription set."""

    connection_id: str
    user_id: str
    username: str = ""
    subscriptions: set[str] = field(default_factory=set)
    created_at: int = 0
    expires_at: int = 0

    def is_expired(self, now: int | None = None) -> bool:
        return self.expires_at <= (now if now is not None else int(time.time()))

    @classmethod
    def from_row(cls, row: dict) -> "ConnectionRecord":
        return cls(
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            username=row.get("username") or "",
            subscriptions=set(row.get("subscriptions") or ()),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )


def _not_registered(connection_id: str) -> NotFound:
    return NotFound(f"Connection not registered: {connection_id}")


class ConnectionRegistry(ABC):
    """Abstract registry of live connections.

    Subscribe and unsubscribe are idempotent set operations that require the
    connection to be registered.
    """

    def __init__(self, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> None:
        self.lease_seconds = lease_seconds

    @abstractmethod
    async def connect(self, connection_id: str, user_id: str, username: str = "") -> ConnectionRecord:
        """Register a connection with an empty subscription set and a fresh lease.

        Registering an id that already exists replaces its record.
        """

    @abstractmethod
    async def disconnect(self, connection_id: str) -> bool:
        """Remove a connection. Returns False if it was not registered."""

    @abstractmethod
    async def subscribe(self, connection_id: str, conversation_id: str) -> None:
        """Add a conversation to the connection's set.

        Raises:
            NotFound: if the connection is not registered.
        """

    @abstractmethod
    async def unsubscribe(self, connection_id: str, conversation_id: str) -> None:
        """Remove a conversation from the connection's set.

        Raises:
            NotFound: if the connection is not registered.
        """

    @abstractmethod
    async def find_subscribers(self, conversation_id: str) -> list[ConnectionRecord]:
        """All connections subscribed to a conversation."""

    @abstractmethod
    async def get(self, connection_id: str) -> ConnectionRecord | None:
        """Get a connection record, or None."""

    @abstractmethod
    async def reap_expired(self, now: int | None = None) -> int:
        """Delete records whose lease has lapsed. Returns the number removed."""

    def _lease(self) -> tuple[int, int]:
        created_at = int(time.time())
        return created_at, created_at + self.lease_seconds


class InMemoryConnectionRegistry(ConnectionRegistry):
    """Registry held in process memory, indexed by conversation id.

    All mutation happens on the event loop thread, so no locking is needed.
    """

    def __init__(self, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> None:
        super().__init__(lease_seconds)
        self._records: dict[str, ConnectionRecord] = {}
        self._by_conversation: dict[str, set[str]] = defaultdict(set)

    async def connect(self, connection_id: str, user_id: str, username: str = "") -> ConnectionRecord:
        self._drop(connection_id)
        created_at, expires_at = self._lease()
        record = ConnectionRecord(
            connection_id=connection_id,
            user_id=user_id,
            username=username,
            created_at=created_at,
            expires_at=expires_at,
        )
        self._records[connection_id] = record
        return record

    def _drop(self, connection_id: str) -> bool:
        record = self._records.pop(connection_id, None)
        if record is None:
            return False
        for conversation_id in record.subscriptions:
            self._unindex(conversation_id, connection_id)
        return True

    def _unindex(self, conversation_id: str, connection_id: str) -> None:
        members = self._by_conversation.get(conversation_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._by_conversation[conversation_id]

    async def disconnect(self, connection_id: str) -> bool:
        return self._drop(connection_id)

    async def subscribe(self, connection_id: str, conversation_id: str) -> None:
        record = self._records.get(connection_id)
        if record is None:
            raise _not_registered(connection_id)
        record.subscriptions.add(conversation_id)
        self._by_conversation[conversation_id].add(connection_id)

    async def unsubscribe(self, connection_id: str, conversation_id: str) -> None:
        record = self._records.get(connection_id)
        if record is None:
            raise _not_registered(connection_id)
        record.subscriptions.discard(conversation_id)
        self._unindex(conversation_id, connection_id)

    async def find_subscribers(self, conversation_id: str) -> list[ConnectionRecord]:
        ids = self._by_conversation.get(conversation_id, ())
        return [self._records[cid] for cid in list(ids) if cid in self._records]

    async def get(self, connection_id: str) -> ConnectionRecord | None:
        return self._records.get(connection_id)

    async def reap_expired(self, now: int | None = None) -> int:
        now = now if now is not None else int(time.time())
        expired = [cid for cid, record in self._records.items() if record.is_expired(now)]
        for connection_id in expired:
            self._drop(connection_id)
        return len(expired)


class DatabaseConnectionRegistry(ConnectionRegistry):
    """Registry stored in the connections/connection_subscriptions tables.

    Database calls run in the DB executor to keep the event loop free.
    """

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(db.get_executor(), fn, *args)

    async def connect(self, connection_id: str, user_id: str, username: str = "") -> ConnectionRecord:
        created_at, expires_at = self._lease()
        await self._run(db.upsert_connection, connection_id, user_id, username, created_at, expires_at)
        return ConnectionRecord(
            connection_id=connection_id,
            user_id=user_id,
            username=username,
            created_at=created_at,
            expires_at=expires_at,
        )

    async def disconnect(self, connection_id: str) -> bool:
        return await self._run(db.delete_connection, connection_id)

    async def subscribe(self, connection_id: str, conversation_id: str) -> None:
        if not await self._run(db.add_subscription, connection_id, conversation_id):
            raise _not_registered(connection_id)

    async def unsubscribe(self, connection_id: str, conversation_id: str) -> None:
        if not await self._run(db.remove_subscription, connection_id, conversation_id):
            raise _not_registered(connection_id)

    async def find_subscribers(self, conversation_id: str) -> list[ConnectionRecord]:
        rows = await self._run(db.find_subscribers, conversation_id)
        return [ConnectionRecord.from_row(row) for row in rows]

    async def get(self, connection_id: str) -> ConnectionRecord | None:
        row = await self._run(db.get_connection_record, connection_id)
        return ConnectionRecord.from_row(row) if row else None

    async def reap_expired(self, now: int | None = None) -> int:
        return await self._run(db.delete_expired_connections, now)


def create_registry(backend: str, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> ConnectionRegistry:
    """Build a registry for a configured backend name."""
    if backend == "database":
        return DatabaseConnectionRegistry(lease_seconds)
    return InMemoryConnectionRegistry(lease_seconds)


# --- Global singleton ---

_registry: ConnectionRegistry | None = None


def get_registry() -> ConnectionRegistry:
    """Get the global connection registry.

    Built from settings on first call. Use set_registry() to swap in a
    different implementation (e.g., for testing).
    """
    global _registry
    if _registry is None:
        from .config import get_settings

        settings = get_settings()
        _registry = create_registry(settings.registry_backend, settings.lease_seconds)
        logger.info(f"Using {type(_registry).__name__} (lease {settings.lease_seconds}s)")
    return _registry


def set_registry(registry: ConnectionRegistry) -> None:
    global _registry
    _registry = registry


def reset_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None
