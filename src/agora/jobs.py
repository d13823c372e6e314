"""Scheduled jobs for agora.

Connection leases and invite expiry are passive: nothing deletes a record
the moment it expires. These jobs do the reaping, either from the server's
background loop (run_reaper) or on demand from the CLI.
"""

from __future__ import annotations

import asyncio
import logging

from . import db
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def reap_expired_connections(now: int | None = None, dry_run: bool = False) -> int:
    """Delete stored connection records whose lease has lapsed.

    Returns:
        Number of records deleted (or that would be, with dry_run).
    """
    if dry_run:
        conn = db.get_connection()
        cursor = conn.execute(
            "SELECT COUNT(*) FROM connections WHERE expires_at <= ?",
            (now if now is not None else db.now_s(),),
        )
        return cursor.fetchone()[0]
    return db.delete_expired_connections(now)


def cleanup_expired_invites(now: int | None = None) -> int:
    """Delete invites past their expiry. Returns the number deleted."""
    return db.delete_expired_invites(now)


def cleanup_expired_sessions(now: int | None = None) -> int:
    return db.delete_expired_sessions(now)


async def run_reaper(
    registry: ConnectionRegistry,
    interval: float,
    stop_event: asyncio.Event,
) -> None:
    """Reap expired connection leases every ``interval`` seconds until stopped.

    Failures are logged and the loop keeps running.
    """
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            reaped = await registry.reap_expired()
            if reaped:
                logger.info(f"Reaped {reaped} expired connections")
        except Exception:
            logger.error("Connection reaping failed", exc_info=True)
