"""
Catalog Service — command handlers (CQRS write side)

Profiles (customers, stores, drivers), store products, reviews and the
admin console (moderation, app settings).
The only contended write here is the rating aggregate, which is updated
with a compare-and-swap on the profile's version column.
"""

import logging
import math
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..actors import Actor, Operation, Role, authorize, can
from ..app_settings import SETTINGS_ID, ensure_open, load_app_settings
from ..errors import (
    ConflictError,
    NotAssignedError,
    NotFoundError,
    OrderNotFoundError,
    ProfileNotFoundError,
    ValidationError,
)
from ..geo import Coordinates, is_valid

logger = logging.getLogger(__name__)

PROFILE_ROLES = (Role.CUSTOMER, Role.STORE, Role.DRIVER)

# the orders_read_model column naming each party of an order
PARTY_COLUMNS = {Role.CUSTOMER: "customer_id", Role.STORE: "store_id", Role.DRIVER: "driver_id"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def running_average(old_avg: float, old_count: int, score: float) -> float:
    return (old_avg * old_count + score) / (old_count + 1)


# ── Profiles ────────────────────────────────────────


async def register_profile(
    session: AsyncSession,
    actor: Actor,
    name: str,
    phone: str = "",
    image_url: str = "",
    category: str | None = None,
    location: str = "",
    coordinates: Coordinates | None = None,
) -> dict:
    if actor.role not in PROFILE_ROLES:
        raise ValidationError(f"{actor.role.value} accounts have no profile")
    if not name.strip():
        raise ValidationError("name is required")
    if coordinates is not None and not is_valid(coordinates):
        raise ValidationError("coordinates are out of range")
    await ensure_open(session, actor)

    now = _now()
    try:
        await session.execute(
            text("""
                INSERT INTO profiles
                    (role, id, name, phone, image_url, category, location, lat, lng,
                     created_at, updated_at)
                VALUES
                    (:role, :id, :name, :phone, :image_url, :category, :location, :lat, :lng,
                     :now, :now)
            """),
            {
                "role": actor.role.value,
                "id": actor.id,
                "name": name.strip(),
                "phone": phone,
                "image_url": image_url,
                "category": category,
                "location": location,
                "lat": coordinates.lat if coordinates else None,
                "lng": coordinates.lng if coordinates else None,
                "now": now,
            },
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"{actor.role.value} {actor.id} is already registered") from exc

    logger.info("Registered %s %s", actor.role.value, actor.id)
    return {"role": actor.role.value, "id": actor.id, "name": name.strip()}


async def _update_profile_fields(session: AsyncSession, actor: Actor, fields: dict) -> None:
    await ensure_open(session, actor)
    assignments = ", ".join(f"{column} = :{column}" for column in fields)
    result = await session.execute(
        text(f"""
            UPDATE profiles
            SET {assignments}, updated_at = :now
            WHERE role = :role AND id = :id
        """),
        {**fields, "now": _now(), "role": actor.role.value, "id": actor.id},
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ProfileNotFoundError(f"{actor.role.value} {actor.id} has no profile")
    await session.commit()


async def update_profile(
    session: AsyncSession,
    actor: Actor,
    name: str | None = None,
    phone: str | None = None,
    image_url: str | None = None,
) -> None:
    fields = {
        key: value
        for key, value in (("name", name), ("phone", phone), ("image_url", image_url))
        if value is not None
    }
    if not fields:
        raise ValidationError("nothing to update")
    if "name" in fields and not fields["name"].strip():
        raise ValidationError("name cannot be empty")
    await _update_profile_fields(session, actor, fields)


async def update_coordinates(session: AsyncSession, actor: Actor, coordinates: Coordinates) -> None:
    """Live location, pushed periodically by drivers and once by stores/customers."""
    if not is_valid(coordinates):
        raise ValidationError("coordinates are out of range")
    await _update_profile_fields(session, actor, {"lat": coordinates.lat, "lng": coordinates.lng})


async def set_fcm_token(session: AsyncSession, actor: Actor, token: str) -> None:
    if not token:
        raise ValidationError("token is required")
    await _update_profile_fields(session, actor, {"fcm_token": token})


async def verify_store(session: AsyncSession, actor: Actor, store_id: str, verified: bool) -> None:
    authorize(actor, Operation.VERIFY_STORE)
    result = await session.execute(
        text("""
            UPDATE profiles SET is_verified = :verified, updated_at = :now
            WHERE role = 'STORE' AND id = :id
        """),
        {"verified": verified, "now": _now(), "id": store_id},
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ProfileNotFoundError(f"store {store_id} not found")
    await session.commit()
    logger.info("Store %s verified=%s by %s", store_id, verified, actor.id)


async def delete_profile(session: AsyncSession, actor: Actor, role: Role, profile_id: str) -> None:
    """
    Admin removal of an account. A store's products go with it; its orders
    and the reviews it received stay on record.
    """
    authorize(actor, Operation.MODERATE)
    if role not in PROFILE_ROLES:
        raise ValidationError(f"{role.value} accounts have no profile")
    result = await session.execute(
        text("DELETE FROM profiles WHERE role = :role AND id = :id"),
        {"role": role.value, "id": profile_id},
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ProfileNotFoundError(f"{role.value} {profile_id} not found")
    if role == Role.STORE:
        await session.execute(
            text("DELETE FROM products WHERE store_id = :store_id"),
            {"store_id": profile_id},
        )
    await session.commit()
    logger.warning("%s %s deleted by admin %s", role.value, profile_id, actor.id)


# ── App settings ────────────────────────────────────


async def update_app_settings(
    session: AsyncSession,
    actor: Actor,
    is_locked: bool | None = None,
    global_message: str | None = None,
    delivery_base_fee: float | None = None,
) -> dict:
    """
    Admin console switches. Setting a message stamps last_broadcast so
    clients can tell a new announcement from one they already showed.
    """
    authorize(actor, Operation.MANAGE_APP)
    fields: dict = {}
    if is_locked is not None:
        fields["is_locked"] = is_locked
    if global_message is not None:
        fields["global_message"] = global_message.strip()
        fields["last_broadcast"] = _now()
    if delivery_base_fee is not None:
        if not math.isfinite(delivery_base_fee) or delivery_base_fee < 0:
            raise ValidationError("delivery base fee must be a non-negative number")
        fields["delivery_base_fee"] = delivery_base_fee
    if not fields:
        raise ValidationError("nothing to update")

    now = _now()
    await session.execute(
        text("""
            INSERT INTO app_settings (id, updated_at) VALUES (:id, :now)
            ON CONFLICT (id) DO NOTHING
        """),
        {"id": SETTINGS_ID, "now": now},
    )
    assignments = ", ".join(f"{column} = :{column}" for column in fields)
    await session.execute(
        text(f"UPDATE app_settings SET {assignments}, updated_at = :now WHERE id = :id"),
        {**fields, "now": now, "id": SETTINGS_ID},
    )
    await session.commit()
    logger.warning("App settings changed by admin %s: %s", actor.id, sorted(fields))
    return await load_app_settings(session)


# ── Products ────────────────────────────────────────


async def add_product(
    session: AsyncSession,
    actor: Actor,
    name: str,
    price: float,
    description: str = "",
    category: str | None = None,
    image_url: str = "",
) -> dict:
    authorize(actor, Operation.MANAGE_PRODUCTS)
    if not name.strip():
        raise ValidationError("product name is required")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("price must be positive")
    await ensure_open(session, actor)

    product = {
        "id": str(uuid4()),
        "store_id": actor.id,
        "name": name.strip(),
        "description": description,
        "price": price,
        "category": category,
        "image_url": image_url,
        "created_at": _now(),
    }
    await session.execute(
        text("""
            INSERT INTO products
                (id, store_id, name, description, price, category, image_url, created_at)
            VALUES
                (:id, :store_id, :name, :description, :price, :category, :image_url, :created_at)
        """),
        product,
    )
    await session.commit()
    logger.info("Store %s added product %s", actor.id, product["id"])
    return product


async def remove_product(session: AsyncSession, actor: Actor, product_id: str) -> None:
    """
    Delete a product. Placed orders keep their own copy of its name and price.
    A store removes its own products; the admin may remove any.
    """
    moderating = can(actor, Operation.MODERATE)
    if not moderating:
        authorize(actor, Operation.MANAGE_PRODUCTS)
    await ensure_open(session, actor)
    result = await session.execute(
        text("SELECT store_id FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"product {product_id} not found")
    if not moderating and row.store_id != actor.id:
        raise NotAssignedError(f"product {product_id} belongs to another store")

    await session.execute(
        text("DELETE FROM products WHERE id = :id AND store_id = :store_id"),
        {"id": product_id, "store_id": row.store_id},
    )
    await session.commit()
    if moderating:
        logger.warning("Product %s of store %s removed by admin %s", product_id, row.store_id, actor.id)


# ── Reviews ─────────────────────────────────────────


async def _bump_rating(
    session: AsyncSession,
    target_role: Role,
    target_id: str,
    score: int,
    max_attempts: int,
) -> tuple[float, int]:
    """Fold one score into (rating, review_count) with a versioned compare-and-swap."""
    for attempt in range(1, max_attempts + 1):
        result = await session.execute(
            text("""
                SELECT rating, review_count, version FROM profiles
                WHERE role = :role AND id = :id
            """),
            {"role": target_role.value, "id": target_id},
        )
        row = result.fetchone()
        if not row:
            raise ProfileNotFoundError(f"{target_role.value} {target_id} not found")

        new_count = row.review_count + 1
        new_rating = running_average(row.rating, row.review_count, score)
        updated = await session.execute(
            text("""
                UPDATE profiles
                SET rating = :rating, review_count = :count, version = version + 1, updated_at = :now
                WHERE role = :role AND id = :id AND version = :version
            """),
            {
                "rating": new_rating,
                "count": new_count,
                "now": _now(),
                "role": target_role.value,
                "id": target_id,
                "version": row.version,
            },
        )
        if updated.rowcount == 1:
            return new_rating, new_count
        logger.info("Rating of %s %s changed concurrently (attempt %d)", target_role.value, target_id, attempt)

    raise ConflictError(f"rating of {target_role.value} {target_id} is busy; try again")


async def submit_review(
    session: AsyncSession,
    author: Actor,
    target_role: Role,
    target_id: str,
    rating: int,
    order_id: str,
    comment: str = "",
    max_attempts: int = 5,
) -> dict:
    """
    Store a review and update the target's running average.

    Every review hangs off a DELIVERED order: the author and the target must
    both be parties of it, and each author reviews each party of an order at
    most once. A customer's review also flags the order as rated.
    """
    authorize(author, Operation.RATE)
    if not 1 <= rating <= 5:
        raise ValidationError("rating must be between 1 and 5")
    if target_role not in PROFILE_ROLES:
        raise ValidationError(f"{target_role.value} cannot be reviewed")
    if target_role == author.role and target_id == author.id:
        raise ValidationError("cannot review yourself")
    if not order_id:
        raise ValidationError("a review needs the order it is about")
    await ensure_open(session, author)

    result = await session.execute(
        text("SELECT customer_id, store_id, driver_id, status FROM orders_read_model WHERE id = :id"),
        {"id": order_id},
    )
    order = result.fetchone()
    if not order:
        raise OrderNotFoundError(f"order {order_id} not found")
    parties = {role: getattr(order, column) for role, column in PARTY_COLUMNS.items()}
    if parties[author.role] != author.id:
        raise NotAssignedError(f"{author.role.value} {author.id} took no part in order {order_id}")
    if order.status != "DELIVERED":
        raise ValidationError(f"order {order_id} is not delivered yet")
    if parties[target_role] != target_id:
        raise ValidationError(f"{target_role.value} {target_id} took no part in order {order_id}")

    try:
        if author.role == Role.CUSTOMER:
            await session.execute(
                text("UPDATE orders_read_model SET rated_by_customer = TRUE WHERE id = :id"),
                {"id": order_id},
            )

        review_id = str(uuid4())
        await session.execute(
            text("""
                INSERT INTO reviews
                    (id, target_role, target_id, order_id, author_role, author_id,
                     rating, comment, created_at)
                VALUES
                    (:id, :target_role, :target_id, :order_id, :author_role, :author_id,
                     :rating, :comment, :now)
            """),
            {
                "id": review_id,
                "target_role": target_role.value,
                "target_id": target_id,
                "order_id": order_id,
                "author_role": author.role.value,
                "author_id": author.id,
                "rating": rating,
                "comment": comment.strip(),
                "now": _now(),
            },
        )
        new_rating, new_count = await _bump_rating(
            session, target_role, target_id, rating, max_attempts
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            f"{target_role.value} {target_id} was already reviewed for order {order_id}"
        ) from exc
    except Exception:
        await session.rollback()
        raise

    logger.info("%s %s rated %s %s: %d", author.role.value, author.id, target_role.value, target_id, rating)
    return {"review_id": review_id, "rating": new_rating, "review_count": new_count}
