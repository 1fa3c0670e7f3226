"""
Order Service — query handlers (CQRS read side)

Reads go to orders_read_model, the denormalised projection the command side
keeps in step with the event store. Line items come from the stored
snapshot only; they are never re-joined against live products.
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import OrderStatus


def _coords(lat, lng) -> dict | None:
    if lat is None or lng is None:
        return None
    return {"lat": lat, "lng": lng}


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "customer_id": row.customer_id,
        "customer_name": row.customer_name,
        "store_id": row.store_id,
        "store_name": row.store_name,
        "driver_id": row.driver_id,
        "items": json.loads(row.items) if isinstance(row.items, str) else row.items,
        "items_total": float(row.items_total),
        "delivery_fee": int(row.delivery_fee),
        "total_price": float(row.total_price),
        "pickup": _coords(row.pickup_lat, row.pickup_lng),
        "dropoff": _coords(row.dropoff_lat, row.dropoff_lng),
        "address": row.address,
        "status": row.status,
        "version": row.version,
        "rated_by_customer": bool(row.rated_by_customer),
        "cancel_reason": row.cancel_reason,
        "cancelled_by": row.cancelled_by,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _row_to_dict(row)


async def list_orders(
    session: AsyncSession,
    customer_id: str | None = None,
    store_id: str | None = None,
    driver_id: str | None = None,
    status: OrderStatus | None = None,
    limit: int = 100,
) -> list[dict]:
    """Orders newest first, optionally narrowed to one party or status."""
    clauses = []
    params: dict = {"limit": limit}
    for column, value in (
        ("customer_id", customer_id),
        ("store_id", store_id),
        ("driver_id", driver_id),
    ):
        if value is not None:
            clauses.append(f"{column} = :{column}")
            params[column] = value
    if status is not None:
        clauses.append("status = :status")
        params["status"] = OrderStatus(status).value
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"SELECT * FROM orders_read_model {where} ORDER BY created_at DESC LIMIT :limit"),
        params,
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def list_available_orders(session: AsyncSession) -> list[dict]:
    """Store-accepted orders no driver has claimed yet, oldest first."""
    result = await session.execute(
        text("""
            SELECT * FROM orders_read_model
            WHERE status = 'ACCEPTED_BY_STORE' AND driver_id IS NULL
            ORDER BY created_at ASC
        """),
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def get_active_order(session: AsyncSession, driver_id: str) -> dict | None:
    """The driver's current job: assigned to them and not yet delivered."""
    result = await session.execute(
        text("""
            SELECT * FROM orders_read_model
            WHERE driver_id = :driver_id
              AND status IN ('ACCEPTED_BY_DRIVER', 'PICKED_UP')
            ORDER BY updated_at DESC
            LIMIT 1
        """),
        {"driver_id": driver_id},
    )
    row = result.fetchone()
    return _row_to_dict(row) if row else None


async def order_history(session: AsyncSession, order_id: str) -> list[dict]:
    """Audit trail: one entry per transition, with its timestamp."""
    events = await event_store.load_events(session, order_id)
    return [
        {
            "event_type": e["event_type"],
            "version": e["version"],
            "timestamp": e["event_data"].get("timestamp", e["created_at"]),
            "data": e["event_data"],
        }
        for e in events
    ]


async def dashboard_stats(session: AsyncSession) -> dict:
    """Order counts per status and revenue from delivered orders (admin console)."""
    result = await session.execute(
        text("""
            SELECT status, COUNT(*) AS orders, COALESCE(SUM(total_price), 0) AS total
            FROM orders_read_model
            GROUP BY status
        """),
    )
    by_status = {s.value: 0 for s in OrderStatus}
    revenue = 0.0
    for row in result.fetchall():
        by_status[row.status] = row.orders
        if row.status == OrderStatus.DELIVERED.value:
            revenue = float(row.total)
    return {
        "orders": sum(by_status.values()),
        "by_status": by_status,
        "delivered_revenue": revenue,
    }
