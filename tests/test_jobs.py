"""Tests for agora scheduled jobs."""

import asyncio

import pytest

from agora import db, invites, jobs
from agora.registry import InMemoryConnectionRegistry


def expire_connection(connection_id: str):
    """Helper to push a stored connection lease into the past."""
    conn = db.get_connection()
    conn.execute("UPDATE connections SET expires_at = 1 WHERE connection_id = ?", (connection_id,))
    conn.commit()


class TestConnectionReaping:
    def test_no_expired_connections(self):
        """Live leases are left alone."""
        db.upsert_connection("c1", "user-1", "alice", db.now_s(), db.now_s() + 3600)

        assert jobs.reap_expired_connections() == 0
        assert db.get_connection_record("c1") is not None

    def test_expired_connections_deleted(self):
        db.upsert_connection("c1", "user-1", "alice", db.now_s(), db.now_s() + 3600)
        db.upsert_connection("c2", "user-2", "bob", db.now_s(), db.now_s() + 3600)
        db.add_subscription("c2", "chan-a")
        expire_connection("c2")

        assert jobs.reap_expired_connections() == 1
        assert db.get_connection_record("c2") is None
        assert db.find_subscribers("chan-a") == []
        assert db.get_connection_record("c1") is not None

    def test_dry_run_counts_only(self):
        db.upsert_connection("c1", "user-1", "alice", db.now_s(), db.now_s() + 3600)
        expire_connection("c1")

        assert jobs.reap_expired_connections(dry_run=True) == 1
        assert db.get_connection_record("c1") is not None


class TestInviteCleanup:
    def test_expired_invites_deleted(self, server_setup, alice):
        server_id = server_setup["server"]["id"]
        user_id = alice["user"]["id"]
        keep = invites.create_invite(server_id, user_id)
        stale = invites.create_invite(server_id, user_id, expires_in_hours=1)

        assert jobs.cleanup_expired_invites(now=stale["expires_at"] + 1) == 1
        assert db.get_invite(stale["code"]) is None
        assert db.get_invite(keep["code"]) is not None


class TestSessionCleanup:
    def test_expired_sessions_deleted(self, alice):
        conn = db.get_connection()
        assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == 1
        conn.execute("UPDATE sessions SET expires_at = 1")
        conn.commit()

        assert jobs.cleanup_expired_sessions() == 1
        assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == 0


class TestReaperLoop:
    @pytest.mark.asyncio
    async def test_reaper_runs_until_stopped(self):
        registry = InMemoryConnectionRegistry(lease_seconds=1)
        calls = []
        original = registry.reap_expired

        async def counting_reap(now=None):
            calls.append(now)
            return await original(now)

        registry.reap_expired = counting_reap
        stop = asyncio.Event()

        task = asyncio.create_task(jobs.run_reaper(registry, 0.01, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(calls) >= 1

    @pytest.mark.asyncio
    async def test_reaper_survives_failures(self):
        registry = InMemoryConnectionRegistry()
        attempts = []

        async def broken_reap(now=None):
            attempts.append(1)
            raise RuntimeError("store down")

        registry.reap_expired = broken_reap
        stop = asyncio.Event()

        task = asyncio.create_task(jobs.run_reaper(registry, 0.01, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(attempts) >= 2
