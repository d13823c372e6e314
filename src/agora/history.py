"""Cursor pagination over per-conversation message logs.

Pages run newest first. The cursor is the ``created_at`` (epoch ms) of the
oldest message on the previous page and is used as an exclusive upper bound
(``created_at < before``) on the next query. Since logs are append-only and
new messages are always newer than any served cursor, chaining cursors
never repeats or skips a message, even while writes continue.

Messages that share a millisecond have no defined relative order; a page
boundary falling inside such a group can hide the rest of the group.
"""

from __future__ import annotations

from typing import Callable, TypedDict

from .errors import InvalidInput

DEFAULT_LIMIT = 50
MIN_LIMIT = 1
MAX_LIMIT = 100

# Cursors are stored as SQLite INTEGER (signed 64-bit)
MAX_CURSOR = 2**63 - 1

# fetch(conversation_id, limit, before) -> newest-first rows with created_at < before
MessageFetcher = Callable[[str, int, "int | None"], list[dict]]


class MessagePage(TypedDict):
    messages: list[dict]
    has_more: bool
    next_cursor: int | None


def clamp_limit(limit: int | None) -> int:
    """Apply the default and clamp to [1, 100]."""
    if limit is None:
        return DEFAULT_LIMIT
    return max(MIN_LIMIT, min(MAX_LIMIT, limit))


def list_page(
    fetch: MessageFetcher,
    conversation_id: str,
    limit: int | None = None,
    before: int | None = None,
) -> MessagePage:
    """Fetch one page of history.

    One extra row is requested to learn whether an older page exists without
    a second query.

    Raises:
        InvalidInput: before is outside the storable timestamp range.
    """
    if before is not None and not 0 <= before <= MAX_CURSOR:
        raise InvalidInput("before must be a non-negative epoch-millisecond timestamp")

    limit = clamp_limit(limit)
    rows = fetch(conversation_id, limit + 1, before)

    has_more = len(rows) > limit
    if has_more:
        rows = rows[:limit]

    return {
        "messages": rows,
        "has_more": has_more,
        "next_cursor": rows[-1]["created_at"] if has_more else None,
    }
