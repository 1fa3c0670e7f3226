"""
Notification Service — push channel, device tokens and event → notification mapping

Delivery is fire-and-forget: a failed push is logged and dropped. Nothing
in the order lifecycle depends on a notification arriving.
"""

import logging

import httpx
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from ..actors import Role
from ..config import Settings

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """
    (title, body) for a role-scoped audience; recipient_id narrows it to one
    actor. tokens are the device tokens the gateway delivers to.
    """
    role: Role
    recipient_id: str | None = None
    title: str
    body: str
    order_id: str | None = None
    tokens: list[str] = []


def notifications_for(event_type: str, data: dict, order: dict) -> list[Notification]:
    """Who hears about which order event. ``order`` carries the order's parties."""
    order_id = data.get("order_id")
    customer_id = order.get("customer_id")
    store_id = order.get("store_id")

    if event_type == "OrderPlaced":
        return [
            Notification(
                role=Role.STORE, recipient_id=store_id, order_id=order_id,
                title="New order", body=f"New order worth {data['total_price']} is waiting for you",
            ),
        ]
    if event_type == "StoreAccepted":
        return [
            Notification(
                role=Role.DRIVER, order_id=order_id,
                title="Order available", body="A store has an order ready for delivery",
            ),
            Notification(
                role=Role.CUSTOMER, recipient_id=customer_id, order_id=order_id,
                title="Order accepted", body="The store is preparing your order",
            ),
        ]
    if event_type == "DriverClaimed":
        return [
            Notification(
                role=Role.CUSTOMER, recipient_id=customer_id, order_id=order_id,
                title="Driver assigned", body="A driver is on the way to the store",
            ),
        ]
    if event_type == "PickupConfirmed":
        return [
            Notification(
                role=Role.CUSTOMER, recipient_id=customer_id, order_id=order_id,
                title="On the way", body="Your order has been picked up",
            ),
        ]
    if event_type == "DeliveryConfirmed":
        return [
            Notification(
                role=Role.CUSTOMER, recipient_id=customer_id, order_id=order_id,
                title="Delivered", body="Your order has arrived. Enjoy!",
            ),
        ]
    if event_type == "OrderCancelled":
        return [
            Notification(
                role=Role.CUSTOMER, recipient_id=customer_id, order_id=order_id,
                title="Order cancelled", body=data.get("reason") or "Your order was cancelled",
            ),
            Notification(
                role=Role.STORE, recipient_id=store_id, order_id=order_id,
                title="Order cancelled", body=data.get("reason") or "An order was cancelled",
            ),
        ]
    return []


class PushChannel:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.url = settings.push_url
        self.api_key = settings.push_api_key
        self.timeout = settings.http_timeout
        self._transport = transport

    async def send(self, notification: Notification) -> bool:
        """Returns whether the push was accepted; never raises on delivery failure."""
        if not self.url:
            logger.debug("Push disabled, dropping %r", notification.title)
            return False

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(self.url, json=notification.model_dump(mode="json"), headers=headers)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("Push %r to %s failed: %s", notification.title, notification.role.value, e)
                return False
        return True


class TokenDirectory:
    """Resolves an audience to device tokens from the tokens profiles registered."""

    def __init__(self, sessions: sessionmaker):
        self.sessions = sessions

    async def tokens_for(self, role: Role, recipient_id: str | None = None) -> list[str]:
        """One actor's token, or every token of the role for a broadcast."""
        query = "SELECT fcm_token FROM profiles WHERE role = :role AND fcm_token IS NOT NULL"
        params = {"role": role.value}
        if recipient_id is not None:
            query += " AND id = :id"
            params["id"] = recipient_id
        async with self.sessions() as session:
            result = await session.execute(text(query), params)
            return [row.fcm_token for row in result.fetchall()]
