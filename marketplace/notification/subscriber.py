"""
Notification Service — Redis Pub/Sub subscriber

Subscribes to the order_events channel and turns every lifecycle event
into role-scoped push notifications.

Note: Redis Pub/Sub is fire-and-forget. Events published while this
service is down are never seen; that is acceptable because notifications
are a convenience, not part of the order's correctness.
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from ..order.commands import ORDER_EVENTS_CHANNEL
from .push import PushChannel, TokenDirectory, notifications_for

logger = logging.getLogger(__name__)


async def handle_message(push: PushChannel, directory: TokenDirectory, raw: str) -> int:
    """
    Dispatch one published event; returns how many pushes were accepted.
    An audience with no registered device token is skipped.
    """
    event = json.loads(raw)
    event_type = event.get("event_type")
    sent = 0
    for notification in notifications_for(event_type, event.get("data", {}), event.get("order", {})):
        notification.tokens = await directory.tokens_for(notification.role, notification.recipient_id)
        if not notification.tokens:
            logger.debug("No device token for %s %s", notification.role.value, notification.recipient_id)
            continue
        if await push.send(notification):
            sent += 1
    logger.info("Handled %s: %d notification(s) sent", event_type, sent)
    return sent


async def run_subscriber(
    redis_url: str,
    push: PushChannel,
    directory: TokenDirectory,
    shutdown_event: asyncio.Event,
) -> None:
    """
    Listen on order_events until shutdown_event is set.
    A bad message is logged and skipped; the loop keeps running.
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(ORDER_EVENTS_CHANNEL)
    logger.info("Subscribed to %s channel", ORDER_EVENTS_CHANNEL)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await handle_message(push, directory, message["data"])
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(ORDER_EVENTS_CHANNEL)
        await pubsub.aclose()
        await redis_conn.aclose()
