"""
Order Service — order aggregate

The aggregate's state is never stored directly: it is rebuilt by replaying
the order's events. apply_xxx methods mutate state for one event;
check_xxx methods decide whether a command may produce the next event.

State transitions:
    PENDING → ACCEPTED_BY_STORE → ACCEPTED_BY_DRIVER → PICKED_UP → DELIVERED
    any non-terminal state → CANCELLED
"""

from enum import Enum

from ..actors import Actor, Role
from ..errors import (
    ClaimLostError,
    InvalidTransitionError,
    NotAssignedError,
)
from .events import LineItem


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED_BY_STORE = "ACCEPTED_BY_STORE"
    ACCEPTED_BY_DRIVER = "ACCEPTED_BY_DRIVER"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


NEXT_STATUS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING: OrderStatus.ACCEPTED_BY_STORE,
    OrderStatus.ACCEPTED_BY_STORE: OrderStatus.ACCEPTED_BY_DRIVER,
    OrderStatus.ACCEPTED_BY_DRIVER: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP: OrderStatus.DELIVERED,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
DRIVER_STATUSES = frozenset({
    OrderStatus.ACCEPTED_BY_DRIVER,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERED,
})

# Latest status each role may still cancel from. Admin may cancel any
# non-terminal order; drivers cannot abandon an order they claimed.
CANCELLABLE_BY: dict[Role, frozenset[OrderStatus]] = {
    Role.CUSTOMER: frozenset({OrderStatus.PENDING}),
    Role.STORE: frozenset({OrderStatus.PENDING, OrderStatus.ACCEPTED_BY_STORE}),
    Role.ADMIN: frozenset(NEXT_STATUS),
    Role.DRIVER: frozenset(),
}


def is_legal_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return NEXT_STATUS.get(current) == target


class OrderAggregate:
    """Order aggregate — rebuilt from its events."""

    def __init__(self) -> None:
        self.id: str | None = None
        self.customer_id: str = ""
        self.customer_name: str = ""
        self.store_id: str = ""
        self.store_name: str = ""
        self.driver_id: str | None = None
        self.items: list[LineItem] = []
        self.items_total: float = 0
        self.delivery_fee: int = 0
        self.total_price: float = 0
        self.pickup: dict | None = None
        self.dropoff: dict | None = None
        self.address: str = ""
        self.status: OrderStatus | None = None
        self.cancelled_by: str | None = None
        self.cancel_reason: str | None = None
        self.created_at: str | None = None
        self.transitions: list[dict] = []
        self.version: int = 0

    @property
    def exists(self) -> bool:
        return self.id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ── event application ───────────────────────────

    def _move_to(self, status: OrderStatus, data: dict) -> None:
        self.status = status
        self.transitions.append({"status": status.value, "timestamp": data.get("timestamp")})

    def apply_order_placed(self, data: dict) -> None:
        self.id = data["order_id"]
        self.customer_id = data["customer_id"]
        self.customer_name = data.get("customer_name", "")
        self.store_id = data["store_id"]
        self.store_name = data.get("store_name", "")
        self.items = [LineItem(**item) for item in data["items"]]
        self.items_total = data["items_total"]
        self.delivery_fee = data["delivery_fee"]
        self.total_price = data["total_price"]
        self.pickup = data["pickup"]
        self.dropoff = data["dropoff"]
        self.address = data.get("address", "")
        self.created_at = data["timestamp"]
        self._move_to(OrderStatus.PENDING, data)

    def apply_store_accepted(self, data: dict) -> None:
        self._move_to(OrderStatus.ACCEPTED_BY_STORE, data)

    def apply_driver_claimed(self, data: dict) -> None:
        self.driver_id = data["driver_id"]
        self._move_to(OrderStatus.ACCEPTED_BY_DRIVER, data)

    def apply_pickup_confirmed(self, data: dict) -> None:
        self._move_to(OrderStatus.PICKED_UP, data)

    def apply_delivery_confirmed(self, data: dict) -> None:
        self._move_to(OrderStatus.DELIVERED, data)

    def apply_order_cancelled(self, data: dict) -> None:
        # the assignment survives in the DriverClaimed event
        self.driver_id = None
        self.cancelled_by = data["cancelled_by"]
        self.cancel_reason = data.get("reason", "")
        self._move_to(OrderStatus.CANCELLED, data)

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderPlaced": self.apply_order_placed,
            "StoreAccepted": self.apply_store_accepted,
            "DriverClaimed": self.apply_driver_claimed,
            "PickupConfirmed": self.apply_pickup_confirmed,
            "DeliveryConfirmed": self.apply_delivery_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── command guards ──────────────────────────────

    def _require_status(self, expected: OrderStatus, action: str) -> None:
        if self.status != expected:
            raise InvalidTransitionError(
                f"cannot {action} order {self.id} in status {self.status.value}"
            )

    def check_store_accept(self, store_id: str) -> None:
        if store_id != self.store_id:
            raise InvalidTransitionError(f"order {self.id} does not belong to store {store_id}")
        self._require_status(OrderStatus.PENDING, "accept")

    def check_driver_claim(self, driver_id: str) -> None:
        if self.driver_id is not None and self.driver_id != driver_id:
            raise ClaimLostError(f"order {self.id} was already claimed by another driver")
        self._require_status(OrderStatus.ACCEPTED_BY_STORE, "claim")

    def check_driver_step(self, driver_id: str, target: OrderStatus) -> None:
        if self.driver_id is None or self.driver_id != driver_id:
            raise NotAssignedError(f"driver {driver_id} is not assigned to order {self.id}")
        if not is_legal_transition(self.status, target) or target == OrderStatus.CANCELLED:
            raise InvalidTransitionError(
                f"cannot move order {self.id} from {self.status.value} to {target.value}"
            )

    def check_cancel(self, actor: Actor) -> None:
        if actor.role == Role.CUSTOMER and actor.id != self.customer_id:
            raise NotAssignedError(f"order {self.id} does not belong to customer {actor.id}")
        if actor.role == Role.STORE and actor.id != self.store_id:
            raise NotAssignedError(f"order {self.id} does not belong to store {actor.id}")
        if actor.role == Role.DRIVER:
            raise NotAssignedError("drivers cannot cancel orders")
        if self.is_terminal:
            raise InvalidTransitionError(
                f"order {self.id} is already {self.status.value}"
            )
        if self.status not in CANCELLABLE_BY[actor.role]:
            raise InvalidTransitionError(
                f"{actor.role.value} cannot cancel order {self.id} once it is {self.status.value}"
            )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "store_id": self.store_id,
            "driver_id": self.driver_id,
            "status": self.status.value if self.status else None,
            "items_total": self.items_total,
            "delivery_fee": self.delivery_fee,
            "total_price": self.total_price,
            "version": self.version,
        }
