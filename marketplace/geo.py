"""
Geo pricing — great-circle distance and the delivery fee policy.

Pure functions with no I/O. The fee is computed once when an order is
placed and frozen into the order record; nothing here is ever re-run
against an existing order.
"""

import math

from pydantic import BaseModel

from .config import PricingMode, Settings
from .errors import ValidationError

EARTH_RADIUS_KM = 6371.0

BASE_FEE = 150
PER_KM_FEE = 30
DISCOUNT_THRESHOLD = 5000
DISCOUNT_RATE = 0.2


class Coordinates(BaseModel):
    lat: float
    lng: float


def is_valid(coords: Coordinates | None) -> bool:
    if coords is None:
        return False
    lat, lng = coords.lat, coords.lng
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def _haversine(a: Coordinates, b: Coordinates) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return round(EARTH_RADIUS_KM * c, 1)


def distance_km(a: Coordinates | None, b: Coordinates | None) -> float:
    """
    Haversine distance in km, rounded to one decimal.

    Missing or out-of-range coordinates yield 0 instead of an error;
    use ``strict_distance_km`` where bad data must be surfaced.
    """
    if not (is_valid(a) and is_valid(b)):
        return 0.0
    return _haversine(a, b)


def strict_distance_km(a: Coordinates | None, b: Coordinates | None) -> float:
    if not is_valid(a):
        raise ValidationError("pickup coordinates are missing or invalid")
    if not is_valid(b):
        raise ValidationError("dropoff coordinates are missing or invalid")
    return _haversine(a, b)


def delivery_fee(
    distance: float,
    order_subtotal: float,
    *,
    base_fee: float = BASE_FEE,
    per_km_fee: float = PER_KM_FEE,
    discount_threshold: float = DISCOUNT_THRESHOLD,
    discount_rate: float = DISCOUNT_RATE,
) -> int:
    """
    base + km * rate, discounted above the threshold, rounded up to a multiple of 10.

    >>> delivery_fee(10, 6000)
    360
    """
    fee = base_fee + distance * per_km_fee
    if order_subtotal > discount_threshold:
        fee = fee * (1 - discount_rate)
    # round() first so float noise such as 360.00000000000006 does not bump a step
    return int(math.ceil(round(fee, 6) / 10) * 10)


class DeliveryPricing:
    """Fee policy chosen by configuration: a flat fee or the distance formula."""

    def __init__(
        self,
        mode: PricingMode = PricingMode.FLAT,
        flat_fee: int = 200,
        base_fee: float = BASE_FEE,
        per_km_fee: float = PER_KM_FEE,
        discount_threshold: float = DISCOUNT_THRESHOLD,
        discount_rate: float = DISCOUNT_RATE,
        strict_coordinates: bool = False,
    ) -> None:
        self.mode = mode
        self.flat_fee = flat_fee
        self.base_fee = base_fee
        self.per_km_fee = per_km_fee
        self.discount_threshold = discount_threshold
        self.discount_rate = discount_rate
        self.strict_coordinates = strict_coordinates

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeliveryPricing":
        return cls(
            mode=settings.pricing_mode,
            flat_fee=settings.flat_delivery_fee,
            base_fee=settings.base_fee,
            per_km_fee=settings.per_km_fee,
            discount_threshold=settings.discount_threshold,
            discount_rate=settings.discount_rate,
            strict_coordinates=settings.strict_coordinates,
        )

    def distance(self, pickup: Coordinates | None, dropoff: Coordinates | None) -> float:
        if self.strict_coordinates:
            return strict_distance_km(pickup, dropoff)
        return distance_km(pickup, dropoff)

    def quote(
        self,
        pickup: Coordinates | None,
        dropoff: Coordinates | None,
        subtotal: float,
        base_fee: float | None = None,
    ) -> int:
        """
        Fee for one delivery. ``base_fee`` overrides the configured base
        (the admin's runtime setting); flat mode ignores it. Strict mode
        rejects bad coordinates in either mode.
        """
        distance = self.distance(pickup, dropoff)
        if self.mode == PricingMode.FLAT:
            return self.flat_fee
        return delivery_fee(
            distance,
            subtotal,
            base_fee=self.base_fee if base_fee is None else base_fee,
            per_km_fee=self.per_km_fee,
            discount_threshold=self.discount_threshold,
            discount_rate=self.discount_rate,
        )
