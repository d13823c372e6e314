"""Servers, channels and memberships.

All functions are synchronous (they hit the database) and raise errors from
agora.errors. The API layer runs them in an executor.
"""

from __future__ import annotations

from . import cache, db
from .errors import Forbidden, InvalidInput, NotFound

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
MANAGER_ROLES = (ROLE_OWNER, ROLE_ADMIN)

CHANNEL_TYPES = ("text", "voice")
DEFAULT_CHANNEL = "general"
MAX_NAME_LENGTH = 100

NOT_A_MEMBER = "You are not a member of this server"


def require_role(server_id: str, user_id: str) -> str:
    """Return the caller's role in a server, or raise Forbidden."""
    role = cache.get_member_role(server_id, user_id)
    if role is None:
        raise Forbidden(NOT_A_MEMBER)
    return role


def require_manager(server_id: str, user_id: str, action: str) -> str:
    """Require an owner or admin. ``action`` completes "Only owners and admins can ..."."""
    role = require_role(server_id, user_id)
    if role not in MANAGER_ROLES:
        raise Forbidden(f"Only owners and admins can {action}")
    return role


def require_owner(server_id: str, user_id: str, action: str) -> None:
    role = require_role(server_id, user_id)
    if role != ROLE_OWNER:
        raise Forbidden(f"Only the server owner can {action}")


def add_member(server_id: str, user_id: str, username: str, role: str = ROLE_MEMBER) -> dict:
    member = db.add_member(server_id, user_id, username, role)
    cache.invalidate_membership(server_id, user_id)
    return member


def _with_channels(server: dict) -> dict:
    return {
        **server,
        "channels": db.list_channels(server["id"]),
        "member_count": db.count_members(server["id"]),
    }


def create_server(user_id: str, username: str, name: str) -> dict:
    """Create a server owned by the caller, with a default text channel."""
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise InvalidInput("Server name must be 1-100 characters")

    server = db.create_server(name, user_id)
    add_member(server["id"], user_id, username, ROLE_OWNER)
    db.create_channel(server["id"], DEFAULT_CHANNEL, "text")

    return _with_channels(server)


def list_user_servers(user_id: str) -> list[dict]:
    return db.list_servers_for_user(user_id)


def get_server(server_id: str, user_id: str) -> dict:
    """Server with channels and member count. Members only."""
    server = db.get_server(server_id)
    if server is None:
        raise NotFound("Server not found")
    require_role(server_id, user_id)
    return _with_channels(server)


def normalize_channel_name(name: str) -> str:
    return name.strip().lower().replace(" ", "-")


def create_channel(
    server_id: str,
    user_id: str,
    name: str,
    channel_type: str = "text",
) -> dict:
    require_manager(server_id, user_id, "create channels")

    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise InvalidInput("Channel name must be 1-100 characters")
    if channel_type not in CHANNEL_TYPES:
        raise InvalidInput(f"Channel type must be one of: {', '.join(CHANNEL_TYPES)}")

    return db.create_channel(server_id, normalize_channel_name(name), channel_type)


def list_channels(server_id: str, user_id: str) -> list[dict]:
    return get_server(server_id, user_id)["channels"]


def list_members(server_id: str, user_id: str) -> list[dict]:
    require_role(server_id, user_id)
    return db.list_members(server_id)


def get_channel_in_server(server_id: str, channel_id: str) -> dict:
    """Get a channel, hiding channels that belong to another server."""
    channel = db.get_channel(channel_id)
    if channel is None or channel["server_id"] != server_id:
        raise NotFound("Channel not found")
    return channel
