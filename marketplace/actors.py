"""
Actors — who is calling, and which lifecycle operations their role may invoke.

Role checks live here only. Per-order ownership (is this the order's store,
is this the assigned driver) is checked by the order aggregate.
"""

from enum import Enum

from pydantic import BaseModel

from .errors import NotAssignedError


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    STORE = "STORE"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class Operation(str, Enum):
    PLACE_ORDER = "place_order"
    STORE_ACCEPT = "store_accept"
    DRIVER_CLAIM = "driver_claim"
    CONFIRM_PICKUP = "confirm_pickup"
    CONFIRM_DELIVERY = "confirm_delivery"
    CANCEL = "cancel"
    RATE = "rate"
    MANAGE_PRODUCTS = "manage_products"
    VERIFY_STORE = "verify_store"
    MODERATE = "moderate"
    MANAGE_APP = "manage_app"


class Actor(BaseModel):
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


ALLOWED_OPERATIONS: dict[Role, frozenset[Operation]] = {
    Role.CUSTOMER: frozenset({Operation.PLACE_ORDER, Operation.CANCEL, Operation.RATE}),
    Role.STORE: frozenset({
        Operation.STORE_ACCEPT,
        Operation.CANCEL,
        Operation.RATE,
        Operation.MANAGE_PRODUCTS,
    }),
    Role.DRIVER: frozenset({
        Operation.DRIVER_CLAIM,
        Operation.CONFIRM_PICKUP,
        Operation.CONFIRM_DELIVERY,
        Operation.RATE,
    }),
    Role.ADMIN: frozenset({
        Operation.CANCEL,
        Operation.VERIFY_STORE,
        Operation.MODERATE,
        Operation.MANAGE_APP,
    }),
}


def can(actor: Actor, operation: Operation) -> bool:
    return operation in ALLOWED_OPERATIONS[actor.role]


def authorize(actor: Actor, operation: Operation) -> None:
    if not can(actor, operation):
        raise NotAssignedError(f"{actor.role.value} may not {operation.value}")
