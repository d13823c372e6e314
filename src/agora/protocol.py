"""Subscription protocol for push connections.

Per connection there are two states: Connected(subscriptions) and
Disconnected (terminal). Entry requires a valid credential. Inbound control
messages mutate the subscription set in a single registry update:

    {"action": "subscribe",   "channel_id": "<conversation id>"}
    {"action": "unsubscribe", "channel_id": "<conversation id>"}

Replies:
    {"status": "subscribed", "channel_id": ...}
    {"status": "unsubscribed", "channel_id": ...}
    {"error": "...", "status_code": 400}

Subscribing requires access to the conversation: membership in the
channel's server, or being a participant of the DM conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect
from uuid_extensions import uuid7 as make_uuid7

from . import cache, db
from .auth_provider import verify_bearer_token
from .errors import AgoraError, Forbidden, InvalidInput, NotFound
from .registry import ConnectionRegistry
from .transport import LocalWebSocketTransport, PushTransport

logger = logging.getLogger(__name__)

SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"

CONNECTED = "connected"
DISCONNECTED = "disconnected"

# Close code for a failed handshake credential check
CLOSE_UNAUTHENTICATED = 4401

Authorizer = Callable[[str, str], Awaitable[None]]


def parse_control_message(raw: str | bytes | None) -> tuple[str, str]:
    """Parse a control message into (action, conversation_id).

    Raises:
        InvalidInput: empty body, malformed JSON or a frame without an
            action, missing channel_id, unknown action.
    """
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        raise InvalidInput("empty body")

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidInput("invalid message format") from e

    if not isinstance(data, dict):
        raise InvalidInput("invalid message format")

    action = data.get("action")
    if not isinstance(action, str):
        raise InvalidInput("invalid message format")

    conversation_id = data.get("channel_id")

    if action not in (SUBSCRIBE, UNSUBSCRIBE):
        raise InvalidInput("unknown action")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise InvalidInput("channel_id required")

    return action, conversation_id


def authorize_subscription(user_id: str, conversation_id: str) -> None:
    """Check that a user may receive events for a conversation.

    Unknown ids and DM conversations the user is not part of are both
    reported as NotFound.
    """
    channel = db.get_channel(conversation_id)
    if channel is not None:
        if cache.get_member_role(channel["server_id"], user_id) is None:
            raise Forbidden("You are not a member of this server")
        return

    if db.get_conversation_row(conversation_id, user_id) is not None:
        return

    raise NotFound("Conversation not found")


async def default_authorizer(user_id: str, conversation_id: str) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(db.get_executor(), authorize_subscription, user_id, conversation_id)


class SubscriptionSession:
    """Protocol state for one connection, independent of the socket."""

    def __init__(
        self,
        connection_id: str,
        user_id: str,
        registry: ConnectionRegistry,
        username: str = "",
        authorize: Authorizer | None = default_authorizer,
    ):
        self.connection_id = connection_id
        self.user_id = user_id
        self.username = username
        self.registry = registry
        self.authorize = authorize
        self.state: str | None = None

    async def open(self) -> None:
        await self.registry.connect(self.connection_id, self.user_id, self.username)
        self.state = CONNECTED

    async def apply(self, action: str, conversation_id: str) -> dict[str, Any]:
        """Apply one parsed control message. Raises AgoraError on rejection."""
        if self.state != CONNECTED:
            raise InvalidInput("connection is not open")

        if action == SUBSCRIBE:
            if self.authorize is not None:
                await self.authorize(self.user_id, conversation_id)
            await self.registry.subscribe(self.connection_id, conversation_id)
            return {"status": "subscribed", "channel_id": conversation_id}

        await self.registry.unsubscribe(self.connection_id, conversation_id)
        return {"status": "unsubscribed", "channel_id": conversation_id}

    async def handle(self, raw: str | bytes | None) -> dict[str, Any]:
        """Handle a raw inbound frame and build the reply."""
        try:
            action, conversation_id = parse_control_message(raw)
            return await self.apply(action, conversation_id)
        except AgoraError as e:
            return {"error": e.detail, "status_code": e.status_code}

    async def close(self) -> None:
        """Move to Disconnected. Store errors are logged, not raised."""
        if self.state == DISCONNECTED:
            return
        self.state = DISCONNECTED
        try:
            await self.registry.disconnect(self.connection_id)
        except Exception:
            logger.warning(f"Failed to remove connection {self.connection_id}", exc_info=True)


async def _authenticate(token: str | None):
    if not token:
        return None
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(db.get_executor(), verify_bearer_token, token)
    return result if result.valid else None


async def serve_websocket(
    websocket: WebSocket,
    token: str | None,
    registry: ConnectionRegistry,
    transport: PushTransport,
    authorize: Authorizer | None = default_authorizer,
) -> None:
    """Run the connect / control-loop / disconnect lifecycle of one socket."""
    auth = await _authenticate(token)
    if auth is None:
        logger.info("Rejected WebSocket connection: unauthorized")
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
        return

    await websocket.accept()

    connection_id = str(make_uuid7())
    session = SubscriptionSession(
        connection_id, auth.user_id, registry, username=auth.username or "", authorize=authorize
    )
    await session.open()

    local = transport if isinstance(transport, LocalWebSocketTransport) else None
    if local is not None:
        local.register(connection_id, websocket)

    logger.info(f"Connection {connection_id} opened for user {auth.user_id}")
    await websocket.send_json({"status": "connected", "connection_id": connection_id})

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Control messages may arrive as text or binary frames
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await websocket.send_json(await session.handle(raw))
    except WebSocketDisconnect:
        pass
    finally:
        if local is not None:
            local.unregister(connection_id)
        await session.close()
        logger.info(f"Connection {connection_id} closed")
