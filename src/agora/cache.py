"""In-memory TTL caching for agora.

Membership roles are read on nearly every request (authorization checks and
subscription authorization on the WebSocket). They are cached here and
explicitly invalidated whenever a membership row is written. LRU eviction
keeps memory bounded.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from . import db
from .metrics import metrics

logger = logging.getLogger(__name__)

MEMBERSHIP_CACHE_TTL = float(os.environ.get("AGORA_MEMBERSHIP_CACHE_TTL", 300))
MEMBERSHIP_CACHE_SIZE = int(os.environ.get("AGORA_MEMBERSHIP_CACHE_SIZE", 10000))


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self) -> bool:
        return time.time() > self.expires_at


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    Args:
        name: Name of the cache (for metrics)
        default_ttl: Default TTL in seconds (0 = no expiration, rely on LRU)
        max_size: Maximum number of entries
    """

    name: str
    default_ttl: float = 300.0
    max_size: int = 1000
    _data: OrderedDict[str, CacheEntry] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> tuple[bool, Any]:
        """Get a value from the cache.

        Returns:
            (hit, value) tuple. If hit is False, value is None.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                metrics.record_cache_lookup(self.name, hit=False)
                return False, None

            if entry.is_expired():
                del self._data[key]
                metrics.record_cache_lookup(self.name, hit=False)
                return False, None

            self._data.move_to_end(key)
            metrics.record_cache_lookup(self.name, hit=True)
            return True, entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict_expired()
                while len(self._data) >= self.max_size:
                    self._data.popitem(last=False)

            expires_at = time.time() + ttl if ttl > 0 else float("inf")
            self._data[key] = CacheEntry(value=value, expires_at=expires_at)
            self._data.move_to_end(key)

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if the key existed."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate all keys starting with a prefix. Returns the count removed."""
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for key in keys:
                del self._data[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def _evict_expired(self) -> None:
        """Evict all expired entries. Must be called with lock held."""
        now = time.time()
        for key in [k for k, v in self._data.items() if v.expires_at <= now]:
            del self._data[key]

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }


membership_cache = TTLCache(
    name="membership",
    default_ttl=MEMBERSHIP_CACHE_TTL,
    max_size=MEMBERSHIP_CACHE_SIZE,
)


def _role_key(server_id: str, user_id: str) -> str:
    return f"role:{server_id}:{user_id}"


def get_member_role(server_id: str, user_id: str) -> str | None:
    """Cached lookup of a user's role in a server (None = not a member)."""
    hit, role = membership_cache.get(_role_key(server_id, user_id))
    if hit:
        return role

    role = db.get_member_role(server_id, user_id)
    membership_cache.set(_role_key(server_id, user_id), role)
    return role


def invalidate_membership(server_id: str, user_id: str) -> None:
    """Invalidate the cached role for a server/user pair."""
    membership_cache.delete(_role_key(server_id, user_id))


def invalidate_server(server_id: str) -> None:
    membership_cache.invalidate_prefix(f"role:{server_id}:")


def clear_all_caches() -> None:
    """Clear all caches (useful for testing)."""
    membership_cache.clear()
