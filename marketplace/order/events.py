"""
Order Service — event definitions

Every state change of an order is recorded as a past-tense, immutable event.
The payload of each event is the model below, serialised with model_dump.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from ..geo import Coordinates


class LineItem(BaseModel):
    """A cart line frozen into the order; unit_price never follows later catalog edits."""
    product_id: str
    name: str = ""
    quantity: int
    unit_price: float

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price


class OrderPlaced(BaseModel):
    """A customer placed an order against a store"""
    order_id: str
    customer_id: str
    customer_name: str = ""
    store_id: str
    store_name: str = ""
    items: list[LineItem]
    items_total: float
    delivery_fee: int
    total_price: float
    pickup: Coordinates
    dropoff: Coordinates
    address: str = ""
    timestamp: datetime


class StoreAccepted(BaseModel):
    """The store accepted the order and is preparing it"""
    order_id: str
    store_id: str
    timestamp: datetime


class DriverClaimed(BaseModel):
    """A driver won the claim on the order"""
    order_id: str
    driver_id: str
    timestamp: datetime


class PickupConfirmed(BaseModel):
    """The driver collected the order from the store"""
    order_id: str
    driver_id: str
    timestamp: datetime


class DeliveryConfirmed(BaseModel):
    """The driver handed the order to the customer"""
    order_id: str
    driver_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    order_id: str
    cancelled_by: str
    reason: str = ""
    timestamp: datetime


class PlaceOrderInput(BaseModel):
    """Cart snapshot and addresses submitted at checkout."""
    customer_id: str
    store_id: str
    items: list[LineItem] = Field(default_factory=list)
    pickup: Coordinates | None = None
    dropoff: Coordinates | None = None
    customer_name: str = ""
    store_name: str = ""
    address: str = ""
