"""
Order Service — command handlers (CQRS write side)

Each command rebuilds the aggregate from its events, lets the aggregate
decide whether the transition is legal, then in ONE transaction:

1. appends the event at expected_version + 1 (optimistic lock)
2. updates the read model, conditioned on the version it decided on
3. commits

and finally publishes the event on Redis Pub/Sub for the other actors.
A lost race rolls the whole transaction back, so a failed command never
leaves a partial write behind.
"""

import json
import logging
import math
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..actors import Actor, Operation, authorize
from ..app_settings import ensure_open
from ..errors import (
    ClaimLostError,
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    MarketplaceError,
    OrderNotFoundError,
    ValidationError,
)
from ..geo import DeliveryPricing
from . import event_store
from .aggregate import OrderAggregate, OrderStatus
from .events import (
    DeliveryConfirmed,
    DriverClaimed,
    OrderCancelled,
    OrderPlaced,
    PickupConfirmed,
    PlaceOrderInput,
    StoreAccepted,
)

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"
AGGREGATE_TYPE = "Order"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def publish(
    redis: aioredis.Redis,
    event_type: str,
    event_data: dict,
    agg: OrderAggregate,
) -> None:
    """
    Fan the event out to subscribers, with the order's parties attached.

    The write is already committed, so a failed publish is only logged.
    """
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event_type,
            "data": event_data,
            "order": {
                "customer_id": agg.customer_id,
                "store_id": agg.store_id,
                "driver_id": agg.driver_id,
                "status": agg.status.value if agg.status else None,
            },
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s", event_type)


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    events = await event_store.load_events(session, order_id)
    agg = OrderAggregate.from_events(events)
    if not agg.exists:
        raise OrderNotFoundError(f"order {order_id} not found")
    return agg


async def _record(
    session: AsyncSession,
    agg: OrderAggregate,
    event: BaseModel,
    status: OrderStatus,
    extra_set: str = "",
    extra_where: str = "",
    params: dict | None = None,
) -> tuple[int, dict]:
    """Append the event and move the read model, both conditioned on agg.version."""
    event_type = type(event).__name__
    event_data = event.model_dump(mode="json")
    version = await event_store.append_event(
        session, agg.id, AGGREGATE_TYPE, event_type, event_data, agg.version
    )
    result = await session.execute(
        text(f"""
            UPDATE orders_read_model
            SET status = :status, version = :version, updated_at = :now{extra_set}
            WHERE id = :id AND version = :expected{extra_where}
        """),
        {
            "id": agg.id,
            "status": status.value,
            "version": version,
            "expected": agg.version,
            "now": event_data["timestamp"],
            **(params or {}),
        },
    )
    if result.rowcount != 1:
        raise event_store.VersionConflict(f"order {agg.id} changed since version {agg.version}")
    await session.commit()
    agg.apply_event(event_type, event_data)
    agg.version = version
    return version, event_data


async def _commit_transition(
    session: AsyncSession,
    redis: aioredis.Redis,
    agg: OrderAggregate,
    event: BaseModel,
    status: OrderStatus,
    lost_error: type[MarketplaceError] = InvalidTransitionError,
    **kwargs,
) -> OrderAggregate:
    try:
        _, event_data = await _record(session, agg, event, status, **kwargs)
    except ConflictError as exc:
        await session.rollback()
        logger.warning("Order %s: %s lost to a concurrent update", agg.id, type(event).__name__)
        raise lost_error(f"order {agg.id} was changed by someone else; reload it") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Order %s: failed to record %s", agg.id, type(event).__name__)
        raise ExternalServiceError("order store unavailable") from exc
    await publish(redis, type(event).__name__, event_data, agg)
    return agg


# ── Placement ───────────────────────────────────────


def validate_cart(order: PlaceOrderInput) -> None:
    if not order.items:
        raise ValidationError("cart is empty")
    for item in order.items:
        if item.quantity <= 0:
            raise ValidationError(f"quantity for {item.product_id} must be positive")
        if not math.isfinite(item.unit_price) or item.unit_price <= 0:
            raise ValidationError(f"price for {item.product_id} must be positive")
    if order.pickup is None:
        raise ValidationError("pickup coordinates are required")
    if order.dropoff is None:
        raise ValidationError("dropoff coordinates are required")


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    pricing: DeliveryPricing,
    order: PlaceOrderInput,
) -> OrderAggregate:
    """
    Place-order command

    The delivery fee is quoted here, once, and frozen into the OrderPlaced
    event together with the line-item prices. With strict coordinates an
    out-of-range pickup or dropoff is rejected before anything is written.
    """
    validate_cart(order)
    app = await ensure_open(session)
    items_total = round(sum(item.subtotal for item in order.items), 2)
    fee = pricing.quote(order.pickup, order.dropoff, items_total, base_fee=app["delivery_base_fee"])

    event = OrderPlaced(
        order_id=str(uuid4()),
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        store_id=order.store_id,
        store_name=order.store_name,
        items=order.items,
        items_total=items_total,
        delivery_fee=fee,
        total_price=items_total + fee,
        pickup=order.pickup,
        dropoff=order.dropoff,
        address=order.address,
        timestamp=_now(),
    )
    event_data = event.model_dump(mode="json")

    try:
        version = await event_store.append_event(
            session, event.order_id, AGGREGATE_TYPE, "OrderPlaced", event_data, 0
        )
        await session.execute(
            text("""
                INSERT INTO orders_read_model
                    (id, customer_id, customer_name, store_id, store_name, driver_id, items,
                     items_total, delivery_fee, total_price,
                     pickup_lat, pickup_lng, dropoff_lat, dropoff_lng,
                     address, status, version, created_at, updated_at)
                VALUES
                    (:id, :customer_id, :customer_name, :store_id, :store_name, NULL, :items,
                     :items_total, :delivery_fee, :total_price,
                     :pickup_lat, :pickup_lng, :dropoff_lat, :dropoff_lng,
                     :address, 'PENDING', :version, :now, :now)
            """),
            {
                "id": event.order_id,
                "customer_id": event.customer_id,
                "customer_name": event.customer_name,
                "store_id": event.store_id,
                "store_name": event.store_name,
                "items": json.dumps(event_data["items"]),
                "items_total": event.items_total,
                "delivery_fee": event.delivery_fee,
                "total_price": event.total_price,
                "pickup_lat": event.pickup.lat,
                "pickup_lng": event.pickup.lng,
                "dropoff_lat": event.dropoff.lat,
                "dropoff_lng": event.dropoff.lng,
                "address": event.address,
                "version": version,
                "now": event_data["timestamp"],
            },
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Failed to place order for customer %s", order.customer_id)
        raise ExternalServiceError("order store unavailable") from exc

    logger.info(
        "Order %s placed by %s at store %s (total=%s, fee=%s)",
        event.order_id, event.customer_id, event.store_id, event.total_price, fee,
    )
    agg = OrderAggregate()
    agg.apply_order_placed(event_data)
    agg.version = version
    await publish(redis, "OrderPlaced", event_data, agg)
    return agg


# ── Store ───────────────────────────────────────────


async def store_accept(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    store_id: str,
) -> OrderAggregate:
    """Store accepts the order: PENDING → ACCEPTED_BY_STORE."""
    await ensure_open(session)
    agg = await load_order(session, order_id)
    agg.check_store_accept(store_id)

    event = StoreAccepted(order_id=order_id, store_id=store_id, timestamp=_now())
    await _commit_transition(
        session, redis, agg, event, OrderStatus.ACCEPTED_BY_STORE,
        extra_where=" AND status = 'PENDING'",
    )
    logger.info("Order %s accepted by store %s", order_id, store_id)
    return agg


# ── Driver ──────────────────────────────────────────


async def driver_claim(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    driver_id: str,
) -> OrderAggregate:
    """
    Driver claims the order: ACCEPTED_BY_STORE → ACCEPTED_BY_DRIVER.

    Many drivers may race for the same order. Whoever appends version n+1
    first wins; every other claimant hits the version lock (or the
    driver_id IS NULL condition), is rolled back and gets ClaimLostError.
    """
    await ensure_open(session)
    agg = await load_order(session, order_id)
    agg.check_driver_claim(driver_id)

    event = DriverClaimed(order_id=order_id, driver_id=driver_id, timestamp=_now())
    await _commit_transition(
        session, redis, agg, event, OrderStatus.ACCEPTED_BY_DRIVER,
        lost_error=ClaimLostError,
        extra_set=", driver_id = :driver_id",
        extra_where=" AND status = 'ACCEPTED_BY_STORE' AND driver_id IS NULL",
        params={"driver_id": driver_id},
    )
    logger.info("Order %s claimed by driver %s", order_id, driver_id)
    return agg


async def confirm_pickup(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    driver_id: str,
) -> OrderAggregate:
    await ensure_open(session)
    agg = await load_order(session, order_id)
    agg.check_driver_step(driver_id, OrderStatus.PICKED_UP)

    event = PickupConfirmed(order_id=order_id, driver_id=driver_id, timestamp=_now())
    await _commit_transition(
        session, redis, agg, event, OrderStatus.PICKED_UP,
        extra_where=" AND driver_id = :driver_id",
        params={"driver_id": driver_id},
    )
    logger.info("Order %s picked up by driver %s", order_id, driver_id)
    return agg


async def confirm_delivery(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    driver_id: str,
) -> OrderAggregate:
    await ensure_open(session)
    agg = await load_order(session, order_id)
    agg.check_driver_step(driver_id, OrderStatus.DELIVERED)

    event = DeliveryConfirmed(order_id=order_id, driver_id=driver_id, timestamp=_now())
    await _commit_transition(
        session, redis, agg, event, OrderStatus.DELIVERED,
        extra_where=" AND driver_id = :driver_id",
        params={"driver_id": driver_id},
    )
    logger.info("Order %s delivered by driver %s", order_id, driver_id)
    return agg


# ── Cancellation ────────────────────────────────────


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    actor: Actor,
    reason: str = "",
) -> OrderAggregate:
    """Cancel from any non-terminal status the actor's role still allows."""
    authorize(actor, Operation.CANCEL)
    await ensure_open(session, actor)
    agg = await load_order(session, order_id)
    agg.check_cancel(actor)

    event = OrderCancelled(
        order_id=order_id, cancelled_by=actor.id, reason=reason, timestamp=_now()
    )
    await _commit_transition(
        session, redis, agg, event, OrderStatus.CANCELLED,
        extra_set=", driver_id = NULL, cancel_reason = :reason, cancelled_by = :actor_id",
        params={"reason": reason, "actor_id": actor.id},
    )
    logger.info("Order %s cancelled by %s %s", order_id, actor.role.value, actor.id)
    return agg
