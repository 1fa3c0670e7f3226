"""
Order Service — FastAPI entry point

Commands (POST) and queries (GET) are split as in CQRS. Every lifecycle
transition is recorded as an event and published on Redis so the customer,
store and driver views all see it.

Run with:  uvicorn marketplace.order.main:create_app --factory
"""

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel, Field

from ..actors import Actor, Operation, Role, authorize
from ..config import Settings, get_settings
from ..errors import NotAssignedError, OrderNotFoundError
from ..geo import Coordinates, DeliveryPricing
from ..web import current_actor, install_error_handlers, make_lifespan
from . import commands, event_store, queries
from .aggregate import OrderStatus
from .events import LineItem, PlaceOrderInput


# ── Request Models ───────────────────────────────

class PlaceOrderRequest(BaseModel):
    store_id: str
    items: list[LineItem] = Field(default_factory=list)
    pickup: Coordinates | None = None
    dropoff: Coordinates | None = None
    customer_name: str = ""
    store_name: str = ""
    address: str = ""


class CancelRequest(BaseModel):
    reason: str = ""


def _scoped_filters(actor: Actor, customer_id, store_id, driver_id) -> dict:
    """Non-admin callers only ever see their own orders."""
    if actor.role == Role.CUSTOMER:
        return {"customer_id": actor.id, "store_id": store_id, "driver_id": driver_id}
    if actor.role == Role.STORE:
        return {"customer_id": customer_id, "store_id": actor.id, "driver_id": driver_id}
    if actor.role == Role.DRIVER:
        return {"customer_id": customer_id, "store_id": store_id, "driver_id": actor.id}
    return {"customer_id": customer_id, "store_id": store_id, "driver_id": driver_id}


def _can_read(actor: Actor, order: dict) -> bool:
    if actor.is_admin:
        return True
    if actor.role == Role.DRIVER and order["status"] == OrderStatus.ACCEPTED_BY_STORE.value:
        return True
    owner = {
        Role.CUSTOMER: order["customer_id"],
        Role.STORE: order["store_id"],
        Role.DRIVER: order["driver_id"],
    }[actor.role]
    return owner == actor.id


def create_app(settings: Settings | None = None, redis: aioredis.Redis | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Order Service", lifespan=make_lifespan(settings, redis))
    app.state.pricing = DeliveryPricing.from_settings(settings)
    install_error_handlers(app)

    # ── Command Endpoints (write side) ────────────

    @app.post("/commands/orders")
    async def cmd_place_order(
        req: PlaceOrderRequest,
        request: Request,
        actor: Actor = Depends(current_actor),
    ):
        """Customer checks out a cart against one store."""
        authorize(actor, Operation.PLACE_ORDER)
        order = PlaceOrderInput(customer_id=actor.id, **req.model_dump())
        async with request.app.state.sessions() as session:
            agg = await commands.place_order(
                session, request.app.state.redis, request.app.state.pricing, order
            )
            return agg.snapshot()

    @app.post("/commands/orders/{order_id}/accept")
    async def cmd_store_accept(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        authorize(actor, Operation.STORE_ACCEPT)
        async with request.app.state.sessions() as session:
            agg = await commands.store_accept(session, request.app.state.redis, order_id, actor.id)
            return agg.snapshot()

    @app.post("/commands/orders/{order_id}/claim")
    async def cmd_driver_claim(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        """Driver claims an available order; losers get 409 ClaimLostError."""
        authorize(actor, Operation.DRIVER_CLAIM)
        async with request.app.state.sessions() as session:
            agg = await commands.driver_claim(session, request.app.state.redis, order_id, actor.id)
            return agg.snapshot()

    @app.post("/commands/orders/{order_id}/pickup")
    async def cmd_confirm_pickup(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        authorize(actor, Operation.CONFIRM_PICKUP)
        async with request.app.state.sessions() as session:
            agg = await commands.confirm_pickup(session, request.app.state.redis, order_id, actor.id)
            return agg.snapshot()

    @app.post("/commands/orders/{order_id}/deliver")
    async def cmd_confirm_delivery(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        authorize(actor, Operation.CONFIRM_DELIVERY)
        async with request.app.state.sessions() as session:
            agg = await commands.confirm_delivery(session, request.app.state.redis, order_id, actor.id)
            return agg.snapshot()

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel_order(
        order_id: str,
        req: CancelRequest,
        request: Request,
        actor: Actor = Depends(current_actor),
    ):
        async with request.app.state.sessions() as session:
            agg = await commands.cancel_order(
                session, request.app.state.redis, order_id, actor, req.reason
            )
            return agg.snapshot()

    # ── Query Endpoints (read side) ───────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        request: Request,
        customer_id: str | None = None,
        store_id: str | None = None,
        driver_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int = 100,
        actor: Actor = Depends(current_actor),
    ):
        filters = _scoped_filters(actor, customer_id, store_id, driver_id)
        async with request.app.state.sessions() as session:
            return await queries.list_orders(session, status=status, limit=limit, **filters)

    @app.get("/queries/orders/available")
    async def query_available_orders(request: Request, actor: Actor = Depends(current_actor)):
        """Orders waiting for a driver."""
        authorize(actor, Operation.DRIVER_CLAIM)
        async with request.app.state.sessions() as session:
            return await queries.list_available_orders(session)

    @app.get("/queries/orders/active")
    async def query_active_order(request: Request, actor: Actor = Depends(current_actor)):
        authorize(actor, Operation.CONFIRM_DELIVERY)
        async with request.app.state.sessions() as session:
            return await queries.get_active_order(session, actor.id)

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            order = await queries.get_order(session, order_id)
        if not order:
            raise OrderNotFoundError(f"order {order_id} not found")
        if not _can_read(actor, order):
            raise NotAssignedError(f"order {order_id} is not visible to {actor.id}")
        return order

    @app.get("/queries/orders/{order_id}/history")
    async def query_order_history(order_id: str, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            order = await queries.get_order(session, order_id)
            if not order:
                raise OrderNotFoundError(f"order {order_id} not found")
            if not _can_read(actor, order):
                raise NotAssignedError(f"order {order_id} is not visible to {actor.id}")
            return await queries.order_history(session, order_id)

    @app.get("/queries/stats")
    async def query_dashboard_stats(request: Request, actor: Actor = Depends(current_actor)):
        if not actor.is_admin:
            raise NotAssignedError("admin only")
        async with request.app.state.sessions() as session:
            return await queries.dashboard_stats(session)

    # ── Event store (admin audit) ─────────────────

    @app.get("/events")
    async def get_all_events(request: Request, actor: Actor = Depends(current_actor)):
        if not actor.is_admin:
            raise NotAssignedError("admin only")
        async with request.app.state.sessions() as session:
            return await event_store.load_all_events(session)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app
