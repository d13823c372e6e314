"""Invite codes and server passwords.

Invite allocation:
    Codes are 8 characters from a 56-symbol alphabet with look-alikes
    (0/O, 1/l/I, o) removed, about 46 bits of entropy. Uniqueness comes
    from a conditional insert (insert only if the code is unused); a
    collision regenerates the code, up to MAX_CODE_ATTEMPTS attempts in
    total, after which the request fails with Internal.

Redemption:
    join_by_code re-reads the invite and checks expiry and use count at
    redemption time, then increments the counter and adds the membership
    as two separate writes. Two concurrent redemptions of the last use of
    a max-use invite can both succeed: a known over-count, accepted.

Server passwords:
    Owners can set passwords that let anyone who knows the server's exact
    name and a valid password join without an invite code.
"""

from __future__ import annotations

import logging
import secrets
from typing import Callable

from . import auth, db, servers
from .errors import Conflict, Gone, Internal, InvalidInput, NotFound, Unauthenticated

logger = logging.getLogger(__name__)

INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"
INVITE_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 5

MIN_SERVER_PASSWORD_LENGTH = 4


def generate_invite_code() -> str:
    """Generate a random invite code."""
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def _expiry(now: int, expires_in_hours: int | None) -> int | None:
    if expires_in_hours is None:
        return None
    return now + expires_in_hours * 3600


def _is_expired(expires_at: int | None, now: int) -> bool:
    return expires_at is not None and expires_at < now


def create_invite(
    server_id: str,
    user_id: str,
    expires_in_hours: int | None = None,
    max_uses: int | None = None,
    code_factory: Callable[[], str] = generate_invite_code,
) -> dict:
    """Create an invite for a server. Owners and admins only."""
    servers.require_manager(server_id, user_id, "create invites")

    if expires_in_hours is not None and expires_in_hours <= 0:
        raise InvalidInput("expires_in_hours must be positive")
    if max_uses is not None and max_uses <= 0:
        raise InvalidInput("max_uses must be positive")

    server = db.get_server(server_id)
    if server is None:
        raise NotFound("Server not found")

    now = db.now_s()
    invite = {
        "code": "",
        "server_id": server_id,
        "server_name": server["name"],
        "created_by": user_id,
        "created_at": now,
        "expires_at": _expiry(now, expires_in_hours),
        "max_uses": max_uses,
        "use_count": 0,
    }

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        invite["code"] = code_factory()
        if db.insert_invite_if_absent(invite):
            return invite
        logger.warning(f"Invite code collision (attempt {attempt}/{MAX_CODE_ATTEMPTS})")

    logger.error(f"Exhausted {MAX_CODE_ATTEMPTS} attempts allocating an invite code")
    raise Internal("Failed to create invite")


def list_invites(server_id: str, user_id: str) -> list[dict]:
    """Unexpired invites of a server, newest first. Owners and admins only."""
    servers.require_manager(server_id, user_id, "view invites")
    now = db.now_s()
    return [i for i in db.list_server_invites(server_id) if not _is_expired(i["expires_at"], now)]


def delete_invite(server_id: str, code: str, user_id: str) -> None:
    servers.require_manager(server_id, user_id, "delete invites")

    invite = db.get_invite(code)
    # Invites of other servers are reported as missing
    if invite is None or invite["server_id"] != server_id:
        raise NotFound("Invite not found")

    db.delete_invite(code)


def get_invite_info(code: str) -> dict:
    """Public view of a usable invite.

    Raises:
        NotFound: no such code
        Gone: expired, or use count has reached max uses
    """
    invite = db.get_invite(code)
    if invite is None:
        raise NotFound("Invite not found or expired")

    if _is_expired(invite["expires_at"], db.now_s()):
        raise Gone("This invite has expired")

    if invite["max_uses"] is not None and invite["use_count"] >= invite["max_uses"]:
        raise Gone("This invite has reached its usage limit")

    return {
        "code": invite["code"],
        "server_name": invite["server_name"],
        "server_id": invite["server_id"],
        "member_count": db.count_members(invite["server_id"]),
    }


def join_by_code(code: str, user_id: str, username: str) -> dict:
    """Redeem an invite and return the joined server."""
    info = get_invite_info(code)
    server_id = info["server_id"]

    if db.get_member_role(server_id, user_id) is not None:
        raise Conflict("You are already a member of this server")

    db.increment_invite_use(code)
    servers.add_member(server_id, user_id, username, servers.ROLE_MEMBER)
    logger.info(f"User {user_id} joined server {server_id} via invite {code}")

    return servers.get_server(server_id, user_id)


# --- Server Passwords ---


def _public_password(row: dict) -> dict:
    return {
        "id": row["id"],
        "server_id": row["server_id"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "expires_at": row["expires_at"],
    }


def create_server_password(
    server_id: str,
    user_id: str,
    password: str,
    expires_in_hours: int | None = None,
) -> dict:
    servers.require_owner(server_id, user_id, "create passwords")

    if len(password or "") < MIN_SERVER_PASSWORD_LENGTH:
        raise InvalidInput("Password must be at least 4 characters")
    if expires_in_hours is not None and expires_in_hours <= 0:
        raise InvalidInput("expires_in_hours must be positive")

    row = db.insert_server_password(
        server_id,
        auth.hash_password(password),
        user_id,
        expires_at=_expiry(db.now_s(), expires_in_hours),
    )
    return _public_password(row)


def list_server_passwords(server_id: str, user_id: str) -> list[dict]:
    servers.require_owner(server_id, user_id, "view passwords")
    now = db.now_s()
    return [
        _public_password(row)
        for row in db.list_server_passwords(server_id)
        if not _is_expired(row["expires_at"], now)
    ]


def delete_server_password(server_id: str, password_id: str, user_id: str) -> None:
    servers.require_owner(server_id, user_id, "delete passwords")

    row = db.get_server_password(password_id)
    if row is None or row["server_id"] != server_id:
        raise NotFound("Password not found")

    db.delete_server_password(password_id)


def join_by_name(server_name: str, password: str, user_id: str, username: str) -> dict:
    """Join a server by exact name and one of its unexpired passwords."""
    server = db.get_server_by_name((server_name or "").strip())
    if server is None:
        raise Unauthenticated("Invalid server name or password")

    server_id = server["id"]
    if db.get_member_role(server_id, user_id) is not None:
        raise Conflict("You are already a member of this server")

    now = db.now_s()
    matched = any(
        auth.verify_password(password or "", row["password_hash"])
        for row in db.list_server_passwords(server_id)
        if not _is_expired(row["expires_at"], now)
    )
    if not matched:
        raise Unauthenticated("Invalid server name or password")

    servers.add_member(server_id, user_id, username, servers.ROLE_MEMBER)
    logger.info(f"User {user_id} joined server {server_id} by name")

    return servers.get_server(server_id, user_id)
