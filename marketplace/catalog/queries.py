"""
Catalog Service — query handlers (CQRS read side)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..actors import Role


def _profile(row) -> dict:
    return {
        "role": row.role,
        "id": row.id,
        "name": row.name,
        "phone": row.phone,
        "image_url": row.image_url,
        "category": row.category,
        "location": row.location,
        "coordinates": {"lat": row.lat, "lng": row.lng} if row.lat is not None else None,
        "rating": float(row.rating),
        "review_count": row.review_count,
        "is_verified": bool(row.is_verified),
    }


def _product(row) -> dict:
    return {
        "id": row.id,
        "store_id": row.store_id,
        "name": row.name,
        "description": row.description,
        "price": float(row.price),
        "category": row.category,
        "image_url": row.image_url,
        "created_at": row.created_at,
    }


async def get_profile(session: AsyncSession, role: Role, profile_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM profiles WHERE role = :role AND id = :id"),
        {"role": role.value, "id": profile_id},
    )
    row = result.fetchone()
    return _profile(row) if row else None


async def list_profiles(session: AsyncSession, role: Role) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM profiles WHERE role = :role ORDER BY created_at DESC"),
        {"role": role.value},
    )
    return [_profile(row) for row in result.fetchall()]


async def list_stores(
    session: AsyncSession,
    category: str | None = None,
    verified_only: bool = False,
) -> list[dict]:
    """Stores for the customer home screen, best rated first."""
    clauses = ["role = 'STORE'"]
    params: dict = {}
    if category is not None:
        clauses.append("category = :category")
        params["category"] = category
    if verified_only:
        clauses.append("is_verified = TRUE")
    result = await session.execute(
        text(f"""
            SELECT * FROM profiles
            WHERE {' AND '.join(clauses)}
            ORDER BY rating DESC, review_count DESC
        """),
        params,
    )
    return [_profile(row) for row in result.fetchall()]


async def list_products(
    session: AsyncSession,
    store_id: str | None = None,
    category: str | None = None,
) -> list[dict]:
    clauses = []
    params: dict = {}
    if store_id is not None:
        clauses.append("store_id = :store_id")
        params["store_id"] = store_id
    if category is not None:
        clauses.append("category = :category")
        params["category"] = category
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    result = await session.execute(
        text(f"SELECT * FROM products {where} ORDER BY created_at DESC"),
        params,
    )
    return [_product(row) for row in result.fetchall()]


async def list_reviews(session: AsyncSession, role: Role, target_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, author_role, author_id, order_id, rating, comment, created_at
            FROM reviews
            WHERE target_role = :role AND target_id = :id
            ORDER BY created_at DESC
        """),
        {"role": role.value, "id": target_id},
    )
    return [
        {
            "id": row.id,
            "author_role": row.author_role,
            "author_id": row.author_id,
            "order_id": row.order_id,
            "rating": row.rating,
            "comment": row.comment,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
