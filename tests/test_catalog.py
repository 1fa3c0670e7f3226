import math

import httpx
import pytest

from marketplace.actors import Actor, Role
from marketplace.app_settings import load_app_settings
from marketplace.catalog import commands, queries
from marketplace.catalog.main import create_app
from marketplace.errors import (
    AppLockedError,
    ConflictError,
    NotAssignedError,
    NotFoundError,
    OrderNotFoundError,
    ProfileNotFoundError,
    ValidationError,
)
from marketplace.geo import Coordinates
from marketplace.integrations.storage import ImageStorage
from marketplace.integrations.textgen import PLACEHOLDER_DESCRIPTION, TextGenerator
from marketplace.order import queries as order_queries

from .conftest import STORE_COORDS


def test_running_average():
    assert commands.running_average(0, 0, 4) == 4
    assert commands.running_average(4, 1, 2) == 3
    assert commands.running_average(4.5, 2, 3) == 4


class TestProfiles:
    async def test_register_and_read(self, session, store):
        await commands.register_profile(
            session, store, "Boulangerie Amine", category="bakery", coordinates=STORE_COORDS
        )
        profile = await queries.get_profile(session, Role.STORE, "store-1")
        assert profile["name"] == "Boulangerie Amine"
        assert profile["coordinates"] == {"lat": 34.7495, "lng": 8.0617}
        assert profile["rating"] == 0
        assert profile["is_verified"] is False

    async def test_duplicate_registration(self, session, customer):
        await commands.register_profile(session, customer, "Sara")
        with pytest.raises(ConflictError):
            await commands.register_profile(session, customer, "Sara again")

    async def test_same_id_different_roles(self, session):
        await commands.register_profile(session, Actor(id="u-1", role=Role.CUSTOMER), "Sara")
        await commands.register_profile(session, Actor(id="u-1", role=Role.DRIVER), "Sara")
        assert len(await queries.list_profiles(session, Role.DRIVER)) == 1

    async def test_admin_has_no_profile(self, session, admin):
        with pytest.raises(ValidationError):
            await commands.register_profile(session, admin, "Root")

    async def test_blank_name(self, session, customer):
        with pytest.raises(ValidationError):
            await commands.register_profile(session, customer, "   ")

    async def test_update_profile(self, session, driver):
        await commands.register_profile(session, driver, "Karim")
        await commands.update_profile(session, driver, phone="0555")
        await commands.update_coordinates(session, driver, Coordinates(lat=34.75, lng=8.06))
        await commands.set_fcm_token(session, driver, "token-1")
        profile = await queries.get_profile(session, Role.DRIVER, "driver-1")
        assert profile["phone"] == "0555"
        assert profile["name"] == "Karim"
        assert profile["coordinates"] == {"lat": 34.75, "lng": 8.06}

    async def test_update_unknown_profile(self, session, driver):
        with pytest.raises(ProfileNotFoundError):
            await commands.update_profile(session, driver, name="Karim")

    async def test_update_rejects_bad_input(self, session, driver):
        await commands.register_profile(session, driver, "Karim")
        with pytest.raises(ValidationError):
            await commands.update_profile(session, driver)
        with pytest.raises(ValidationError):
            await commands.update_coordinates(session, driver, Coordinates(lat=91, lng=0))


class TestStores:
    async def test_only_admin_verifies(self, session, store, admin):
        await commands.register_profile(session, store, "Boulangerie", category="bakery")
        with pytest.raises(NotAssignedError):
            await commands.verify_store(session, store, "store-1", True)
        await commands.verify_store(session, admin, "store-1", True)
        assert [s["id"] for s in await queries.list_stores(session, verified_only=True)] == ["store-1"]

    async def test_verify_unknown_store(self, session, admin):
        with pytest.raises(ProfileNotFoundError):
            await commands.verify_store(session, admin, "ghost", True)

    async def test_stores_by_category(self, session):
        await commands.register_profile(session, Actor(id="s-1", role=Role.STORE), "Bakery", category="bakery")
        await commands.register_profile(session, Actor(id="s-2", role=Role.STORE), "Grocer", category="grocery")
        assert [s["id"] for s in await queries.list_stores(session, category="grocery")] == ["s-2"]
        assert len(await queries.list_stores(session)) == 2


class TestProducts:
    async def test_add_and_list(self, session, store):
        product = await commands.add_product(session, store, "Baguette", 30, category="bread")
        listed = await queries.list_products(session, store_id="store-1")
        assert [p["id"] for p in listed] == [product["id"]]
        assert listed[0]["price"] == 30

    async def test_customer_cannot_add(self, session, customer):
        with pytest.raises(NotAssignedError):
            await commands.add_product(session, customer, "Baguette", 30)

    @pytest.mark.parametrize("name,price", [("", 30), ("Baguette", 0), ("Baguette", -5)])
    async def test_invalid_product(self, session, store, name, price):
        with pytest.raises(ValidationError):
            await commands.add_product(session, store, name, price)

    async def test_remove_own_product_only(self, session, store):
        product = await commands.add_product(session, store, "Baguette", 30)
        with pytest.raises(NotAssignedError):
            await commands.remove_product(session, Actor(id="store-2", role=Role.STORE), product["id"])
        await commands.remove_product(session, store, product["id"])
        assert await queries.list_products(session) == []
        with pytest.raises(NotFoundError):
            await commands.remove_product(session, store, product["id"])

    async def test_removing_product_keeps_order_snapshot(self, session, store, place):
        product = await commands.add_product(session, store, "Couscous", 450)
        agg = await place()
        await commands.remove_product(session, store, product["id"])
        order = await order_queries.get_order(session, agg.id)
        assert order["items"][0]["name"] == "Couscous"
        assert order["items"][0]["unit_price"] == 450


class TestModeration:
    async def test_admin_deletes_store_and_its_products(self, session, store, admin, place):
        await commands.register_profile(session, store, "Bakery")
        await commands.add_product(session, store, "Baguette", 30)
        agg = await place()
        await commands.delete_profile(session, admin, Role.STORE, "store-1")
        assert await queries.get_profile(session, Role.STORE, "store-1") is None
        assert await queries.list_products(session, store_id="store-1") == []
        assert (await order_queries.get_order(session, agg.id))["store_id"] == "store-1"

    async def test_only_admin_deletes_profiles(self, session, customer, driver):
        await commands.register_profile(session, driver, "Karim")
        with pytest.raises(NotAssignedError):
            await commands.delete_profile(session, customer, Role.DRIVER, "driver-1")
        assert await queries.get_profile(session, Role.DRIVER, "driver-1") is not None

    async def test_delete_unknown_profile(self, session, admin):
        with pytest.raises(ProfileNotFoundError):
            await commands.delete_profile(session, admin, Role.CUSTOMER, "ghost")

    async def test_admin_removes_any_product(self, session, store, admin):
        product = await commands.add_product(session, store, "Baguette", 30)
        await commands.remove_product(session, admin, product["id"])
        assert await queries.list_products(session) == []

    async def test_driver_cannot_remove_products(self, session, store, driver):
        product = await commands.add_product(session, store, "Baguette", 30)
        with pytest.raises(NotAssignedError):
            await commands.remove_product(session, driver, product["id"])


class TestAppSettings:
    async def test_defaults_without_a_row(self, session):
        app = await load_app_settings(session)
        assert app["is_locked"] is False
        assert app["global_message"] == ""
        assert app["last_broadcast"] is None
        assert app["delivery_base_fee"] is None

    async def test_broadcast_stamps_time(self, session, admin):
        app = await commands.update_app_settings(session, admin, global_message=" Eid hours ", delivery_base_fee=250)
        assert app["global_message"] == "Eid hours"
        assert app["last_broadcast"] is not None
        assert app["delivery_base_fee"] == 250
        assert app["is_locked"] is False

    async def test_only_admin_changes_settings(self, session, store):
        with pytest.raises(NotAssignedError):
            await commands.update_app_settings(session, store, is_locked=True)

    @pytest.mark.parametrize("fee", [-1, math.nan, math.inf])
    async def test_rejects_bad_base_fee(self, session, admin, fee):
        with pytest.raises(ValidationError):
            await commands.update_app_settings(session, admin, delivery_base_fee=fee)
        assert (await load_app_settings(session))["delivery_base_fee"] is None

    async def test_nothing_to_update(self, session, admin):
        with pytest.raises(ValidationError):
            await commands.update_app_settings(session, admin)

    async def test_lock_blocks_everyone_but_admin(self, session, admin, store, customer):
        await commands.register_profile(session, store, "Bakery")
        await commands.update_app_settings(session, admin, is_locked=True, global_message="Maintenance")
        with pytest.raises(AppLockedError):
            await commands.register_profile(session, customer, "Sara")
        with pytest.raises(AppLockedError):
            await commands.add_product(session, store, "Baguette", 30)
        with pytest.raises(AppLockedError):
            await commands.update_profile(session, store, phone="0555")
        await commands.verify_store(session, admin, "store-1", True)
        assert await queries.list_profiles(session, Role.CUSTOMER) == []


class TestReviews:
    async def test_parties_rate_each_other(self, session, store, customer, driver, advance):
        await commands.register_profile(session, store, "Bakery")
        await commands.register_profile(session, driver, "Karim")
        agg = await advance("DELIVERED")
        await commands.submit_review(session, customer, Role.STORE, "store-1", 5, agg.id)
        result = await commands.submit_review(session, driver, Role.STORE, "store-1", 3, agg.id, comment=" ok ")
        assert result["rating"] == 4
        assert result["review_count"] == 2
        await commands.submit_review(session, customer, Role.DRIVER, "driver-1", 4, agg.id)

        profile = await queries.get_profile(session, Role.STORE, "store-1")
        assert profile["rating"] == 4
        reviews = await queries.list_reviews(session, Role.STORE, "store-1")
        assert sorted((r["author_role"], r["rating"]) for r in reviews) == [("CUSTOMER", 5), ("DRIVER", 3)]
        assert (await order_queries.get_order(session, agg.id))["rated_by_customer"] is True

    async def test_one_review_per_order(self, session, store, customer, advance):
        await commands.register_profile(session, store, "Bakery")
        agg = await advance("DELIVERED")
        await commands.submit_review(session, customer, Role.STORE, "store-1", 5, agg.id)
        with pytest.raises(ConflictError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 1, agg.id)
        profile = await queries.get_profile(session, Role.STORE, "store-1")
        assert profile["review_count"] == 1
        assert profile["rating"] == 5

    async def test_target_must_be_on_the_order(self, session, store, customer, advance):
        await commands.register_profile(session, store, "Bakery")
        await commands.register_profile(session, Actor(id="store-99", role=Role.STORE), "Rival")
        agg = await advance("DELIVERED")
        with pytest.raises(ValidationError):
            await commands.submit_review(session, customer, Role.STORE, "store-99", 1, agg.id)
        with pytest.raises(ValidationError):
            await commands.submit_review(session, customer, Role.DRIVER, "driver-2", 1, agg.id)
        assert (await queries.get_profile(session, Role.STORE, "store-99"))["review_count"] == 0
        assert await queries.list_reviews(session, Role.STORE, "store-99") == []
        assert (await order_queries.get_order(session, agg.id))["rated_by_customer"] is False

    async def test_author_must_be_on_the_order(self, session, store, advance):
        await commands.register_profile(session, store, "Bakery")
        agg = await advance("DELIVERED")
        with pytest.raises(NotAssignedError):
            await commands.submit_review(
                session, Actor(id="cust-2", role=Role.CUSTOMER), Role.STORE, "store-1", 5, agg.id
            )

    @pytest.mark.parametrize("order_id", ["", None])
    async def test_order_is_required(self, session, customer, order_id):
        with pytest.raises(ValidationError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 5, order_id)

    async def test_unknown_order(self, session, customer):
        with pytest.raises(OrderNotFoundError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 5, "no-such-order")

    @pytest.mark.parametrize("rating", [0, 6])
    async def test_rating_out_of_range(self, session, customer, rating):
        with pytest.raises(ValidationError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", rating, "o-1")

    async def test_no_self_review(self, session, store):
        with pytest.raises(ValidationError):
            await commands.submit_review(session, store, Role.STORE, "store-1", 5, "o-1")

    async def test_cannot_rate_undelivered_order(self, session, store, customer, advance):
        await commands.register_profile(session, store, "Bakery")
        agg = await advance("PICKED_UP")
        with pytest.raises(ValidationError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 5, agg.id)
        assert (await order_queries.get_order(session, agg.id))["rated_by_customer"] is False

    async def test_unknown_target_leaves_no_review(self, session, customer, advance):
        agg = await advance("DELIVERED")
        with pytest.raises(ProfileNotFoundError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 5, agg.id)
        assert await queries.list_reviews(session, Role.STORE, "store-1") == []
        assert (await order_queries.get_order(session, agg.id))["rated_by_customer"] is False

    async def test_rating_retries_exhausted(self, session, store, customer, advance):
        await commands.register_profile(session, store, "Bakery")
        agg = await advance("DELIVERED")
        with pytest.raises(ConflictError):
            await commands.submit_review(session, customer, Role.STORE, "store-1", 5, agg.id, max_attempts=0)
        assert await queries.list_reviews(session, Role.STORE, "store-1") == []


# ── HTTP surface ─────────────────────────────────────


def headers(actor_id: str, role: str) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


@pytest.fixture
async def client(settings):
    upload = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"secure_url": "https://img.example/p.jpg"})
    )
    app = create_app(
        settings,
        text_generator=TextGenerator(settings),
        image_storage=ImageStorage(settings, transport=upload),
    )
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://catalog") as client:
            yield client


async def test_api_store_onboarding(client):
    store = headers("store-1", "STORE")
    resp = await client.post("/commands/profiles", json={"name": "Bakery", "category": "bakery"}, headers=store)
    assert resp.status_code == 200
    resp = await client.post("/commands/profiles", json={"name": "Bakery"}, headers=store)
    assert resp.status_code == 409

    resp = await client.post("/commands/stores/store-1/verify", json={"verified": True}, headers=store)
    assert resp.status_code == 403
    resp = await client.post("/commands/stores/store-1/verify", json={}, headers=headers("root", "ADMIN"))
    assert resp.json() == {"store_id": "store-1", "is_verified": True}

    resp = await client.post("/commands/products/describe", json={"name": "Baguette"}, headers=store)
    assert resp.json() == {"description": PLACEHOLDER_DESCRIPTION}

    files = {"file": ("p.jpg", b"\xff\xd8\xff", "image/jpeg")}
    resp = await client.post("/commands/uploads", files=files, headers=store)
    assert resp.json() == {"url": "https://img.example/p.jpg"}

    resp = await client.post(
        "/commands/products",
        json={"name": "Baguette", "price": 30, "image_url": "https://img.example/p.jpg"},
        headers=store,
    )
    product_id = resp.json()["id"]
    products = (await client.get("/queries/products", params={"store_id": "store-1"})).json()
    assert [p["id"] for p in products] == [product_id]

    stores = (await client.get("/queries/stores", params={"verified_only": True})).json()
    assert [s["id"] for s in stores] == ["store-1"]


async def test_api_profile_lookup(client):
    resp = await client.get("/queries/profiles/DRIVER/nobody")
    assert resp.status_code == 404

    driver = headers("driver-1", "DRIVER")
    await client.post("/commands/profiles", json={"name": "Karim"}, headers=driver)
    resp = await client.put("/commands/profiles/me/location", json={"lat": 34.75, "lng": 8.06}, headers=driver)
    assert resp.status_code == 200
    profile = (await client.get("/queries/profiles/DRIVER/driver-1")).json()
    assert profile["coordinates"] == {"lat": 34.75, "lng": 8.06}


async def test_api_review(client, advance):
    agg = await advance("DELIVERED")
    await client.post("/commands/profiles", json={"name": "Karim"}, headers=headers("driver-1", "DRIVER"))
    review = {"target_role": "DRIVER", "target_id": "driver-1", "rating": 4, "order_id": agg.id}
    resp = await client.post("/commands/reviews", json=review, headers=headers("cust-1", "CUSTOMER"))
    assert resp.status_code == 200
    assert resp.json()["review_count"] == 1

    resp = await client.post("/commands/reviews", json=review, headers=headers("cust-1", "CUSTOMER"))
    assert resp.status_code == 409
    resp = await client.post("/commands/reviews", json={**review, "rating": 9}, headers=headers("cust-1", "CUSTOMER"))
    assert resp.status_code == 400
    resp = await client.post(
        "/commands/reviews",
        json={k: v for k, v in review.items() if k != "order_id"},
        headers=headers("cust-1", "CUSTOMER"),
    )
    assert resp.status_code == 422


async def test_api_admin_console(client):
    admin = headers("root", "ADMIN")
    store = headers("store-1", "STORE")
    await client.post("/commands/profiles", json={"name": "Bakery"}, headers=store)

    assert (await client.get("/queries/app-settings")).json()["is_locked"] is False
    resp = await client.patch("/commands/app-settings", json={"is_locked": True}, headers=store)
    assert resp.status_code == 403
    resp = await client.patch(
        "/commands/app-settings", json={"is_locked": True, "global_message": "Maintenance"}, headers=admin
    )
    assert resp.json()["is_locked"] is True

    settings = (await client.get("/queries/app-settings")).json()
    assert settings["global_message"] == "Maintenance"
    assert settings["last_broadcast"] is not None

    resp = await client.post("/commands/products", json={"name": "Baguette", "price": 30}, headers=store)
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Maintenance", "error": "AppLockedError"}

    resp = await client.delete("/commands/profiles/STORE/store-1", headers=store)
    assert resp.status_code == 403
    resp = await client.delete("/commands/profiles/STORE/store-1", headers=admin)
    assert resp.json() == {"status": "deleted", "role": "STORE", "id": "store-1"}
    assert (await client.get("/queries/profiles/STORE/store-1")).status_code == 404
