"""Direct messages between two users.

A conversation's id is derived from the unordered pair of participant ids,
so both sides compute it without a lookup. Each participant has their own
projection row (other user, preview, updated_at) that drives their inbox
ordering. Projection updates after a send are best effort: the message log
is the source of truth.
"""

from __future__ import annotations

import logging

from . import db, history
from .errors import Forbidden, InvalidInput, NotFound
from .messages import validate_content

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50
SEARCH_LIMIT = 20


def make_conversation_id(user_a: str, user_b: str) -> str:
    """Deterministic id for the conversation between two users."""
    low, high = sorted((user_a, user_b))
    return f"{low}_{high}"


def make_preview(content: str) -> str:
    if len(content) > PREVIEW_LENGTH:
        return content[: PREVIEW_LENGTH - 3] + "..."
    return content


def is_participant(conversation_id: str, user_id: str) -> bool:
    return db.get_conversation_row(conversation_id, user_id) is not None


def get_conversation(conversation_id: str, user_id: str) -> dict:
    """The caller's view of a conversation."""
    row = db.get_conversation_row(conversation_id, user_id)
    if row is None:
        raise Forbidden("You are not a participant in this conversation")
    return row


def start_or_get_conversation(user_id: str, username: str, recipient_id: str) -> dict:
    """Return the caller's conversation with a recipient, creating it if needed."""
    if recipient_id == user_id:
        raise InvalidInput("Cannot start a conversation with yourself")

    recipient = db.get_user(recipient_id)
    if recipient is None:
        raise NotFound("User not found")

    conversation_id = make_conversation_id(user_id, recipient_id)
    existing = db.get_conversation_row(conversation_id, user_id)
    if existing is not None:
        return existing

    now = db.now_ms()
    row = db.put_conversation_row(
        conversation_id, user_id, recipient_id, recipient["username"], created_at=now
    )
    db.put_conversation_row(conversation_id, recipient_id, user_id, username, created_at=now)
    logger.info(f"Started conversation {conversation_id}")
    return row


def list_conversations(user_id: str) -> list[dict]:
    return db.list_conversations(user_id)


def _touch_projections(conversation_id: str, participants: tuple[str, str], message: dict) -> None:
    preview = make_preview(message["content"])
    for participant in participants:
        try:
            db.update_conversation_activity(
                conversation_id, participant, message["created_at"], preview
            )
        except Exception:
            logger.warning(
                f"Failed to update conversation {conversation_id} for {participant}",
                exc_info=True,
            )


def send_dm_message(
    conversation_id: str,
    user_id: str,
    username: str,
    content: str,
    created_at: int | None = None,
) -> dict:
    """Append a DM, then refresh both participants' projections."""
    row = get_conversation(conversation_id, user_id)
    content = validate_content(content)

    message = db.insert_dm_message(
        conversation_id, user_id, username, content, created_at=created_at
    )
    _touch_projections(conversation_id, (user_id, row["other_user_id"]), message)
    return message


def list_dm_messages(
    conversation_id: str,
    user_id: str,
    limit: int | None = None,
    before: int | None = None,
) -> history.MessagePage:
    get_conversation(conversation_id, user_id)
    return history.list_page(db.query_dm_messages, conversation_id, limit, before)


def search_users(query: str, user_id: str) -> list[dict]:
    """Username prefix search, excluding the caller."""
    query = (query or "").strip()
    if not query:
        return []
    return db.search_users(query, user_id, limit=SEARCH_LIMIT)
