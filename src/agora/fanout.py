"""Fan-out of newly persisted messages to subscribed connections.

A broadcast runs after the message is durably stored and never fails the
write that triggered it:

1. Resolve subscribers through the registry (best effort, may be stale).
2. Nothing to do if there are none.
3. Serialize the envelope {"type", "message"} once and reuse the bytes.
4. Push to each connection. ConnectionGone deletes the registry record
   before moving on; any other failure is logged and dropped. There are no
   retries: clients reconcile missed events through history pagination.

Delivery is unordered across recipients and carries no guarantee relative
to the HTTP response of the write.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from .metrics import metrics
from .registry import ConnectionRegistry, get_registry
from .transport import ConnectionGone, DeliveryError, PushTransport, get_transport

logger = logging.getLogger(__name__)

NEW_MESSAGE = "new_message"
NEW_DM = "new_dm"
EVENT_TYPES = (NEW_MESSAGE, NEW_DM)

# Live broadcast tasks, kept referenced so they aren't garbage collected
_pending: set[asyncio.Task] = set()


@dataclass
class FanoutResult:
    recipients: int = 0
    delivered: int = 0
    pruned: int = 0
    failed: int = 0


def encode_envelope(event_type: str, message: dict[str, Any]) -> bytes:
    """Serialize the wire envelope for an event."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type!r}")
    return json.dumps({"type": event_type, "message": message}).encode()


async def broadcast(
    event_type: str,
    message: dict[str, Any],
    conversation_id: str,
    registry: ConnectionRegistry | None = None,
    transport: PushTransport | None = None,
) -> FanoutResult:
    """Push one event to every connection subscribed to a conversation."""
    registry = registry or get_registry()
    transport = transport or get_transport()
    result = FanoutResult()

    subscribers = await registry.find_subscribers(conversation_id)
    if not subscribers:
        logger.debug(f"No subscribers for {conversation_id}")
        metrics.record_broadcast(0, 0, 0)
        return result

    payload = encode_envelope(event_type, message)
    result.recipients = len(subscribers)

    for record in subscribers:
        connection_id = record.connection_id
        try:
            await transport.post_to_connection(connection_id, payload)
            result.delivered += 1
        except ConnectionGone as e:
            logger.info(f"Pruning gone connection {connection_id}: {e.reason}")
            try:
                await registry.disconnect(connection_id)
            except Exception:
                logger.warning(f"Failed to delete connection {connection_id}", exc_info=True)
            result.pruned += 1
        except DeliveryError as e:
            logger.warning(f"Failed to deliver to {connection_id}: {e.reason}")
            result.failed += 1
        except Exception:
            logger.warning(f"Unexpected error delivering to {connection_id}", exc_info=True)
            result.failed += 1

    metrics.record_broadcast(result.delivered, result.pruned, result.failed)
    logger.info(
        f"Broadcast complete for {conversation_id}: {result.delivered}/{result.recipients} "
        f"delivered, {result.pruned} pruned, {result.failed} failed"
    )
    return result


async def _run_broadcast(
    event_type: str,
    message: dict[str, Any],
    conversation_id: str,
    registry: ConnectionRegistry | None,
    transport: PushTransport | None,
) -> FanoutResult | None:
    try:
        return await broadcast(event_type, message, conversation_id, registry, transport)
    except Exception:
        logger.error(f"Broadcast to {conversation_id} failed", exc_info=True)
        return None


def schedule_broadcast(
    event_type: str,
    message: dict[str, Any],
    conversation_id: str,
    registry: ConnectionRegistry | None = None,
    transport: PushTransport | None = None,
) -> asyncio.Task:
    """Run a broadcast as an independent task on the running loop.

    Failures are logged inside the task and never reach the caller.
    """
    loop = asyncio.get_running_loop()
    task = loop.create_task(
        _run_broadcast(event_type, message, conversation_id, registry, transport)
    )
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_pending(timeout: float = 5.0) -> None:
    """Wait for in-flight broadcasts (used on shutdown)."""
    if not _pending:
        return
    done, pending = await asyncio.wait(set(_pending), timeout=timeout)
    if pending:
        logger.warning(f"{len(pending)} broadcasts still running at shutdown, cancelling")
        for task in pending:
            task.cancel()
