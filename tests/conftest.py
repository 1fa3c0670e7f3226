"""
Shared fixtures: a file-backed SQLite database per test, a Redis stand-in
that records published messages, and helpers to drive orders through the
lifecycle.
"""

import json

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from marketplace.actors import Actor, Role
from marketplace.config import PricingMode, Settings
from marketplace.geo import Coordinates, DeliveryPricing
from marketplace.order import commands
from marketplace.order.events import LineItem, PlaceOrderInput
from marketplace.schema import create_schema

STORE_COORDS = Coordinates(lat=34.7495, lng=8.0617)
HOME_COORDS = Coordinates(lat=34.7520, lng=8.0550)


class RecordingRedis:
    """Implements the one Redis call the order commands make."""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        pass

    @property
    def event_types(self) -> list[str]:
        return [m["event_type"] for _, m in self.messages]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        pricing_mode=PricingMode.FLAT,
        flat_delivery_fee=200,
        textgen_api_key=None,
        push_url=None,
    )


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def pricing():
    return DeliveryPricing()


@pytest.fixture
def customer():
    return Actor(id="cust-1", role=Role.CUSTOMER)


@pytest.fixture
def store():
    return Actor(id="store-1", role=Role.STORE)


@pytest.fixture
def driver():
    return Actor(id="driver-1", role=Role.DRIVER)


@pytest.fixture
def admin():
    return Actor(id="admin", role=Role.ADMIN)


def make_order(**overrides) -> PlaceOrderInput:
    fields = {
        "customer_id": "cust-1",
        "store_id": "store-1",
        "items": [
            LineItem(product_id="p-1", name="Couscous", quantity=2, unit_price=450),
            LineItem(product_id="p-2", name="Tea", quantity=1, unit_price=100),
        ],
        "pickup": STORE_COORDS,
        "dropoff": HOME_COORDS,
        "address": "Bir el-Ater",
    }
    fields.update(overrides)
    return PlaceOrderInput(**fields)


@pytest.fixture
def place(session, redis, pricing):
    async def _place(**overrides):
        return await commands.place_order(session, redis, pricing, make_order(**overrides))

    return _place


@pytest.fixture
def advance(session, redis, place):
    """Place an order and move it up to the requested status."""

    async def _advance(status: str, driver_id: str = "driver-1"):
        agg = await place()
        steps = [
            ("ACCEPTED_BY_STORE", lambda: commands.store_accept(session, redis, agg.id, "store-1")),
            ("ACCEPTED_BY_DRIVER", lambda: commands.driver_claim(session, redis, agg.id, driver_id)),
            ("PICKED_UP", lambda: commands.confirm_pickup(session, redis, agg.id, driver_id)),
            ("DELIVERED", lambda: commands.confirm_delivery(session, redis, agg.id, driver_id)),
        ]
        for target, step in steps:
            if agg.status.value == status:
                break
            agg = await step()
        return agg

    return _advance
