"""Channel messages: validated writes and paginated history."""

from __future__ import annotations

from . import db, history
from .errors import InvalidInput
from .servers import get_channel_in_server, require_role

MAX_CONTENT_LENGTH = 2000


def validate_content(content: str | None) -> str:
    """Trim and check message content (1-2000 characters)."""
    content = (content or "").strip()
    if not content:
        raise InvalidInput("Message content cannot be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise InvalidInput(f"Message content cannot exceed {MAX_CONTENT_LENGTH} characters")
    return content


def create_message(
    server_id: str,
    channel_id: str,
    user_id: str,
    username: str,
    content: str,
    created_at: int | None = None,
) -> dict:
    """Append a message to a channel log.

    The author's username is copied onto the message and never re-resolved.
    """
    require_role(server_id, user_id)
    get_channel_in_server(server_id, channel_id)
    content = validate_content(content)

    return db.insert_channel_message(channel_id, user_id, username, content, created_at=created_at)


def list_messages(
    server_id: str,
    channel_id: str,
    user_id: str,
    limit: int | None = None,
    before: int | None = None,
) -> history.MessagePage:
    require_role(server_id, user_id)
    get_channel_in_server(server_id, channel_id)

    return history.list_page(db.query_channel_messages, channel_id, limit, before)
