"""Database layer for agora - supports SQLite and Turso (libsql).

Every operation takes an optional ``conn``; without one, the thread-local
connection for the configured database is used:

    init_db()
    user = create_user("a@example.com", "alice", password_hash)

    # Explicit connection
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        create_user(..., conn=conn)

Timestamps: message ``created_at`` and conversation ``updated_at`` are epoch
milliseconds (they double as pagination cursors); everything else is epoch
seconds.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .metrics import timed_operation

logger = logging.getLogger(__name__)

# Thread-local storage for per-thread connections
# FastAPI runs sync DB ops in a thread pool, each thread gets its own connection
_local = threading.local()

# Global libsql connection (libsql uses a single shared connection)
_conn: Any = None
_libsql_lock = threading.Lock()
LIBSQL_CONNECT_TIMEOUT = 10.0

# Single-threaded executor for backends that cannot take concurrent callers
_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def now_s() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(make_uuid7())


def is_using_libsql() -> bool:
    """Check if the database backend is libsql/Turso."""
    return os.environ.get("TURSO_URL", "").startswith("libsql://")


def _configured_path() -> str:
    from .config import get_settings

    return get_settings().db_path


def needs_serialized_access() -> bool:
    """True when DB work must run on a single thread.

    libsql shares one connection. The shared-cache in-memory database takes
    table locks that fail with SQLITE_LOCKED at once (busy_timeout does not
    apply), so concurrent writers cannot simply wait for each other.
    """
    return is_using_libsql() or _configured_path() == ":memory:"


def get_executor() -> ThreadPoolExecutor | None:
    """Executor for running DB calls off the event loop.

    Returns a single-threaded executor when needs_serialized_access() is true,
    otherwise None (the loop's default threadpool with thread-local
    connections).
    """
    global _executor
    if not needs_serialized_access():
        return None
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="db")
            logger.info("Using serialized DB executor")
        return _executor


# --- Connection Management ---


def _connect_sqlite(path: str) -> sqlite3.Connection:
    if path == ":memory:":
        # Shared cache so all threads see the same data. The name includes
        # the process ID so parallel test processes don't collide.
        conn = sqlite3.connect(
            f"file:agora_memdb_{os.getpid()}?mode=memory&cache=shared",
            uri=True,
            check_same_thread=False,
        )
    else:
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def _get_libsql_connection(db_url: str) -> Any:
    global _conn

    if not _libsql_lock.acquire(timeout=LIBSQL_CONNECT_TIMEOUT):
        raise TimeoutError(
            f"Timeout acquiring database connection lock after {LIBSQL_CONNECT_TIMEOUT}s"
        )
    try:
        if _conn is None:
            import libsql_experimental as libsql  # type: ignore[import-not-found]

            logger.info(f"Creating new libsql connection to {db_url[:50]}...")
            try:
                _conn = libsql.connect(db_url, auth_token=os.environ.get("TURSO_AUTH_TOKEN", ""))
            except Exception as e:
                logger.error(f"Failed to connect to libsql: {e}")
                raise RuntimeError(f"Failed to connect to Turso database: {e}") from e
        return _conn
    finally:
        _libsql_lock.release()


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Explicit path. When given, a new (non thread-local) connection
                 is returned and the caller owns it. ":memory:" gives a private
                 in-memory database.

    Returns:
        Connection with row_factory set to sqlite3.Row (SQLite only).
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            return conn
        return _connect_sqlite(str(db_path))

    db_url = os.environ.get("TURSO_URL", "")
    if db_url.startswith("libsql://"):
        return _get_libsql_connection(db_url)

    if getattr(_local, "conn", None) is None:
        _local.conn = _connect_sqlite(_configured_path())

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the thread-local connection and the libsql connection, if any."""
    global _conn

    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None

    if _conn is not None:
        _conn.close()
        _conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to global."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(cursor_description: Any, row: tuple | sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    if isinstance(row, sqlite3.Row):
        return dict(row)
    # For libsql, manually create dict from cursor description
    columns = [col[0] for col in cursor_description]
    return dict(zip(columns, row))


def _rows_to_dicts(cursor_description: Any, rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    if not rows:
        return []
    if isinstance(rows[0], sqlite3.Row):
        return [dict(row) for row in rows]
    columns = [col[0] for col in cursor_description]
    return [dict(zip(columns, row)) for row in rows]


# --- Schema ---

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        avatar_url TEXT,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_users_username ON users(username COLLATE NOCASE);

    CREATE TABLE IF NOT EXISTS sessions (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS servers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        icon_url TEXT,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_servers_name ON servers(name);

    CREATE TABLE IF NOT EXISTS members (
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        username TEXT NOT NULL,
        role TEXT NOT NULL,
        joined_at INTEGER NOT NULL,
        PRIMARY KEY (server_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_members_user ON members(user_id);

    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        channel_type TEXT NOT NULL DEFAULT 'text',
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_channels_server ON channels(server_id);

    CREATE TABLE IF NOT EXISTS channel_messages (
        id TEXT PRIMARY KEY,
        channel_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        author_username TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_channel_messages_log
        ON channel_messages(channel_id, created_at);

    CREATE TABLE IF NOT EXISTS dm_conversations (
        id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        other_user_id TEXT NOT NULL,
        other_username TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        last_message_preview TEXT,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_dm_conversations_user
        ON dm_conversations(user_id, updated_at);

    CREATE TABLE IF NOT EXISTS dm_messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        author_username TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_dm_messages_log
        ON dm_messages(conversation_id, created_at);

    CREATE TABLE IF NOT EXISTS invites (
        code TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        server_name TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        expires_at INTEGER,
        max_uses INTEGER,
        use_count INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_invites_server ON invites(server_id, created_at);

    CREATE TABLE IF NOT EXISTS server_passwords (
        id TEXT PRIMARY KEY,
        server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        expires_at INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_server_passwords_server
        ON server_passwords(server_id, created_at);

    CREATE TABLE IF NOT EXISTS connections (
        connection_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        username TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_connections_expiry ON connections(expires_at);

    CREATE TABLE IF NOT EXISTS connection_subscriptions (
        connection_id TEXT NOT NULL REFERENCES connections(connection_id) ON DELETE CASCADE,
        conversation_id TEXT NOT NULL,
        PRIMARY KEY (connection_id, conversation_id)
    );

    CREATE INDEX IF NOT EXISTS idx_connection_subscriptions_conversation
        ON connection_subscriptions(conversation_id);
"""

# Drop order respects foreign keys
ALL_TABLES = (
    "connection_subscriptions",
    "connections",
    "server_passwords",
    "invites",
    "dm_messages",
    "dm_conversations",
    "channel_messages",
    "channels",
    "members",
    "servers",
    "sessions",
    "users",
)


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def init_db():
    """Initialize database schema using the global connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None):
    """Drop and recreate every table (for testing)."""
    conn = _get_conn(conn)
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};\n" for table in ALL_TABLES))
    conn.commit()
    init_db_with_conn(conn)


# --- Users and Sessions ---


def create_user(
    email: str,
    username: str,
    password_hash: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user. Raises sqlite3.IntegrityError if the email is taken."""
    conn = _get_conn(conn)
    user_id = new_id()
    now = now_s()

    conn.execute(
        """INSERT INTO users (id, email, username, password_hash, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, email, username, password_hash, now),
    )
    conn.commit()

    return {"id": user_id, "email": email, "username": username, "created_at": now}


def get_user(user_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by ID (without the password hash)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, email, username, avatar_url, created_at FROM users WHERE id = ?",
        (user_id,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def get_user_by_email(email: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by email, including the password hash (for login)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, email, username, password_hash, created_at FROM users WHERE email = ?",
        (email,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def search_users(
    prefix: str,
    exclude_user_id: str,
    limit: int = 20,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Case-insensitive username prefix search."""
    conn = _get_conn(conn)
    escaped = prefix.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    cursor = conn.execute(
        """SELECT id, username FROM users
           WHERE LOWER(username) LIKE ? ESCAPE '\\' AND id != ?
           ORDER BY username
           LIMIT ?""",
        (f"{escaped}%", exclude_user_id, limit),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def create_session(
    user_id: str,
    token_hash: str,
    expires_at: int,
    conn: sqlite3.Connection | None = None,
) -> None:
    conn = _get_conn(conn)
    conn.execute(
        "INSERT INTO sessions (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (token_hash, user_id, now_s(), expires_at),
    )
    conn.commit()


def get_session_user(
    token_hash: str,
    now: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Resolve an unexpired session to its user."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT u.id, u.email, u.username
           FROM sessions s JOIN users u ON u.id = s.user_id
           WHERE s.token_hash = ? AND s.expires_at > ?""",
        (token_hash, now if now is not None else now_s()),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def delete_expired_sessions(now: int | None = None, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM sessions WHERE expires_at <= ?",
        (now if now is not None else now_s(),),
    )
    conn.commit()
    return cursor.rowcount


# --- Servers, Members, Channels ---


def create_server(name: str, owner_id: str, conn: sqlite3.Connection | None = None) -> dict:
    conn = _get_conn(conn)
    server = {
        "id": new_id(),
        "name": name,
        "owner_id": owner_id,
        "icon_url": None,
        "created_at": now_s(),
    }
    conn.execute(
        "INSERT INTO servers (id, name, owner_id, icon_url, created_at) VALUES (?, ?, ?, ?, ?)",
        (server["id"], name, owner_id, None, server["created_at"]),
    )
    conn.commit()
    return server


def get_server(server_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, name, owner_id, icon_url, created_at FROM servers WHERE id = ?",
        (server_id,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def get_server_by_name(name: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get the oldest server with an exact name match."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, name, owner_id, icon_url, created_at FROM servers
           WHERE name = ? ORDER BY created_at LIMIT 1""",
        (name,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def list_servers_for_user(user_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT s.id, s.name, s.owner_id, s.icon_url, s.created_at
           FROM servers s JOIN members m ON m.server_id = s.id
           WHERE m.user_id = ?
           ORDER BY m.joined_at, s.created_at""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def add_member(
    server_id: str,
    user_id: str,
    username: str,
    role: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Add (or overwrite) a membership row."""
    conn = _get_conn(conn)
    member = {
        "server_id": server_id,
        "user_id": user_id,
        "username": username,
        "role": role,
        "joined_at": now_s(),
    }
    conn.execute(
        """INSERT OR REPLACE INTO members (server_id, user_id, username, role, joined_at)
           VALUES (?, ?, ?, ?, ?)""",
        (server_id, user_id, username, role, member["joined_at"]),
    )
    conn.commit()
    return member


@timed_operation("get_member_role")
def get_member_role(
    server_id: str, user_id: str, conn: sqlite3.Connection | None = None
) -> str | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT role FROM members WHERE server_id = ? AND user_id = ?",
        (server_id, user_id),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def list_members(server_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT server_id, user_id, username, role, joined_at
           FROM members WHERE server_id = ? ORDER BY joined_at, username""",
        (server_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def count_members(server_id: str, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT COUNT(*) FROM members WHERE server_id = ?", (server_id,))
    return cursor.fetchone()[0]


def create_channel(
    server_id: str,
    name: str,
    channel_type: str = "text",
    conn: sqlite3.Connection | None = None,
) -> dict:
    conn = _get_conn(conn)
    channel = {
        "id": new_id(),
        "server_id": server_id,
        "name": name,
        "channel_type": channel_type,
        "created_at": now_s(),
    }
    conn.execute(
        """INSERT INTO channels (id, server_id, name, channel_type, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (channel["id"], server_id, name, channel_type, channel["created_at"]),
    )
    conn.commit()
    return channel


def get_channel(channel_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, server_id, name, channel_type, created_at FROM channels WHERE id = ?",
        (channel_id,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def list_channels(server_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, server_id, name, channel_type, created_at
           FROM channels WHERE server_id = ? ORDER BY created_at, name""",
        (server_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


# --- Message Logs ---

# Per-conversation append-only logs: table -> conversation key column
MESSAGE_LOGS = {
    "channel_messages": "channel_id",
    "dm_messages": "conversation_id",
}


def _insert_log_message(
    table: str,
    conversation_id: str,
    author_id: str,
    author_username: str,
    content: str,
    created_at: int | None,
    conn: sqlite3.Connection | None,
) -> dict:
    conn = _get_conn(conn)
    key_column = MESSAGE_LOGS[table]
    message = {
        "id": new_id(),
        key_column: conversation_id,
        "author_id": author_id,
        "author_username": author_username,
        "content": content,
        "created_at": created_at if created_at is not None else now_ms(),
    }
    conn.execute(
        f"""INSERT INTO {table} (id, {key_column}, author_id, author_username, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
        (
            message["id"],
            conversation_id,
            author_id,
            author_username,
            content,
            message["created_at"],
        ),
    )
    conn.commit()
    return message


def _query_log_messages(
    table: str,
    conversation_id: str,
    limit: int,
    before: int | None,
    conn: sqlite3.Connection | None,
) -> list[dict]:
    """Newest-first slice of a conversation log, strictly older than ``before``.

    Ordering is by created_at only; rows sharing a millisecond come back in
    whatever order SQLite returns them.
    """
    conn = _get_conn(conn)
    key_column = MESSAGE_LOGS[table]

    query = f"""
        SELECT id, {key_column}, author_id, author_username, content, created_at
        FROM {table}
        WHERE {key_column} = ?
    """
    params: list[Any] = [conversation_id]

    if before is not None:
        query += " AND created_at < ?"
        params.append(before)

    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    cursor = conn.execute(query, tuple(params))
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def insert_channel_message(
    channel_id: str,
    author_id: str,
    author_username: str,
    content: str,
    created_at: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    return _insert_log_message(
        "channel_messages", channel_id, author_id, author_username, content, created_at, conn
    )


@timed_operation("query_channel_messages")
def query_channel_messages(
    channel_id: str,
    limit: int,
    before: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    return _query_log_messages("channel_messages", channel_id, limit, before, conn)


def insert_dm_message(
    conversation_id: str,
    author_id: str,
    author_username: str,
    content: str,
    created_at: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    return _insert_log_message(
        "dm_messages", conversation_id, author_id, author_username, content, created_at, conn
    )


@timed_operation("query_dm_messages")
def query_dm_messages(
    conversation_id: str,
    limit: int,
    before: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    return _query_log_messages("dm_messages", conversation_id, limit, before, conn)


# --- DM Conversation Projections ---


def get_conversation_row(
    conversation_id: str, user_id: str, conn: sqlite3.Connection | None = None
) -> dict | None:
    """Get one participant's projection row of a conversation."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, other_user_id, other_username, updated_at, last_message_preview, created_at
           FROM dm_conversations WHERE id = ? AND user_id = ?""",
        (conversation_id, user_id),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def put_conversation_row(
    conversation_id: str,
    user_id: str,
    other_user_id: str,
    other_username: str,
    created_at: int,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Upsert a participant's projection row (unconditional put)."""
    conn = _get_conn(conn)
    conn.execute(
        """INSERT OR REPLACE INTO dm_conversations
           (id, user_id, other_user_id, other_username, updated_at, last_message_preview, created_at)
           VALUES (?, ?, ?, ?, ?, NULL, ?)""",
        (conversation_id, user_id, other_user_id, other_username, created_at, created_at),
    )
    conn.commit()
    return {
        "id": conversation_id,
        "other_user_id": other_user_id,
        "other_username": other_username,
        "updated_at": created_at,
        "last_message_preview": None,
        "created_at": created_at,
    }


def update_conversation_activity(
    conversation_id: str,
    user_id: str,
    updated_at: int,
    preview: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE dm_conversations SET updated_at = ?, last_message_preview = ?
           WHERE id = ? AND user_id = ?""",
        (updated_at, preview, conversation_id, user_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def list_conversations(user_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, other_user_id, other_username, updated_at, last_message_preview, created_at
           FROM dm_conversations WHERE user_id = ? ORDER BY updated_at DESC""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


# --- Invites ---

INVITE_COLUMNS = (
    "code, server_id, server_name, created_by, created_at, expires_at, max_uses, use_count"
)


def insert_invite_if_absent(invite: dict, conn: sqlite3.Connection | None = None) -> bool:
    """Conditional insert: store the invite only if its code is unused.

    Returns:
        True if the row was written, False if the code already exists.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""INSERT INTO invites ({INVITE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(code) DO NOTHING""",
        (
            invite["code"],
            invite["server_id"],
            invite["server_name"],
            invite["created_by"],
            invite["created_at"],
            invite["expires_at"],
            invite["max_uses"],
            invite["use_count"],
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_invite(code: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {INVITE_COLUMNS} FROM invites WHERE code = ?", (code,))
    return _row_to_dict(cursor.description, cursor.fetchone())


def list_server_invites(server_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """All invites of a server, newest first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {INVITE_COLUMNS} FROM invites WHERE server_id = ? ORDER BY created_at DESC",
        (server_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def increment_invite_use(code: str, conn: sqlite3.Connection | None = None) -> None:
    """Atomically add one to an invite's use counter."""
    conn = _get_conn(conn)
    conn.execute("UPDATE invites SET use_count = use_count + 1 WHERE code = ?", (code,))
    conn.commit()


def delete_invite(code: str, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM invites WHERE code = ?", (code,))
    conn.commit()
    return cursor.rowcount > 0


def delete_expired_invites(now: int | None = None, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM invites WHERE expires_at IS NOT NULL AND expires_at < ?",
        (now if now is not None else now_s(),),
    )
    conn.commit()
    return cursor.rowcount


# --- Server Passwords ---


def insert_server_password(
    server_id: str,
    password_hash: str,
    created_by: str,
    expires_at: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    conn = _get_conn(conn)
    row = {
        "id": new_id(),
        "server_id": server_id,
        "password_hash": password_hash,
        "created_by": created_by,
        "created_at": now_s(),
        "expires_at": expires_at,
    }
    conn.execute(
        """INSERT INTO server_passwords
           (id, server_id, password_hash, created_by, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (row["id"], server_id, password_hash, created_by, row["created_at"], expires_at),
    )
    conn.commit()
    return row


def get_server_password(password_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, server_id, password_hash, created_by, created_at, expires_at
           FROM server_passwords WHERE id = ?""",
        (password_id,),
    )
    return _row_to_dict(cursor.description, cursor.fetchone())


def list_server_passwords(server_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT id, server_id, password_hash, created_by, created_at, expires_at
           FROM server_passwords WHERE server_id = ? ORDER BY created_at DESC""",
        (server_id,),
    )
    return _rows_to_dicts(cursor.description, cursor.fetchall())


def delete_server_password(password_id: str, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM server_passwords WHERE id = ?", (password_id,))
    conn.commit()
    return cursor.rowcount > 0


# --- Connection Registry Storage ---


def upsert_connection(
    connection_id: str,
    user_id: str,
    username: str,
    created_at: int,
    expires_at: int,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Create or replace a connection record with an empty subscription set."""
    conn = _get_conn(conn)
    conn.execute("DELETE FROM connections WHERE connection_id = ?", (connection_id,))
    conn.execute(
        """INSERT INTO connections (connection_id, user_id, username, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (connection_id, user_id, username, created_at, expires_at),
    )
    conn.commit()


def delete_connection(connection_id: str, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM connections WHERE connection_id = ?", (connection_id,))
    conn.commit()
    return cursor.rowcount > 0


def _connections_with_subscriptions(rows: list[dict], conn: sqlite3.Connection) -> list[dict]:
    if not rows:
        return []
    ids = [row["connection_id"] for row in rows]
    placeholders = ",".join("?" for _ in ids)
    cursor = conn.execute(
        f"""SELECT connection_id, conversation_id FROM connection_subscriptions
            WHERE connection_id IN ({placeholders})""",
        tuple(ids),
    )
    subscriptions: dict[str, set[str]] = {cid: set() for cid in ids}
    for connection_id, conversation_id in cursor.fetchall():
        subscriptions[connection_id].add(conversation_id)
    for row in rows:
        row["subscriptions"] = subscriptions[row["connection_id"]]
    return rows


def get_connection_record(
    connection_id: str, conn: sqlite3.Connection | None = None
) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT connection_id, user_id, username, created_at, expires_at
           FROM connections WHERE connection_id = ?""",
        (connection_id,),
    )
    row = _row_to_dict(cursor.description, cursor.fetchone())
    if row is None:
        return None
    return _connections_with_subscriptions([row], conn)[0]


def add_subscription(
    connection_id: str, conversation_id: str, conn: sqlite3.Connection | None = None
) -> bool:
    """Add a conversation to a connection's set.

    Returns:
        False if the connection is not registered, True otherwise (including
        when the subscription was already present).
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """INSERT OR IGNORE INTO connection_subscriptions (connection_id, conversation_id)
           SELECT connection_id, ? FROM connections WHERE connection_id = ?""",
        (conversation_id, connection_id),
    )
    conn.commit()
    if cursor.rowcount == 1:
        return True
    cursor = conn.execute("SELECT 1 FROM connections WHERE connection_id = ?", (connection_id,))
    return cursor.fetchone() is not None


def remove_subscription(
    connection_id: str, conversation_id: str, conn: sqlite3.Connection | None = None
) -> bool:
    """Remove a conversation from a connection's set.

    Returns:
        False if the connection is not registered.
    """
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT 1 FROM connections WHERE connection_id = ?", (connection_id,))
    if cursor.fetchone() is None:
        return False
    conn.execute(
        "DELETE FROM connection_subscriptions WHERE connection_id = ? AND conversation_id = ?",
        (connection_id, conversation_id),
    )
    conn.commit()
    return True


@timed_operation("find_subscribers")
def find_subscribers(conversation_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """All connection records subscribed to a conversation.

    Leases are not checked here; expired rows linger until reaped.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT c.connection_id, c.user_id, c.username, c.created_at, c.expires_at
           FROM connections c
           JOIN connection_subscriptions s ON s.connection_id = c.connection_id
           WHERE s.conversation_id = ?""",
        (conversation_id,),
    )
    rows = _rows_to_dicts(cursor.description, cursor.fetchall())
    return _connections_with_subscriptions(rows, conn)


def delete_expired_connections(
    now: int | None = None, conn: sqlite3.Connection | None = None
) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM connections WHERE expires_at <= ?",
        (now if now is not None else now_s(),),
    )
    conn.commit()
    return cursor.rowcount
