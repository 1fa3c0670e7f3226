"""
App settings — the admin console's runtime switches.

One row shared by every service: maintenance lock, broadcast message and
the delivery base fee override. The catalog service writes it; every
service that accepts writes from customers, stores or drivers reads it
through ``ensure_open`` first.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .actors import Actor
from .errors import AppLockedError

SETTINGS_ID = "global"

DEFAULTS = {
    "is_locked": False,
    "global_message": "",
    "last_broadcast": None,
    "delivery_base_fee": None,
    "updated_at": None,
}


async def load_app_settings(session: AsyncSession) -> dict:
    result = await session.execute(
        text("SELECT * FROM app_settings WHERE id = :id"),
        {"id": SETTINGS_ID},
    )
    row = result.fetchone()
    if not row:
        return dict(DEFAULTS)
    return {
        "is_locked": bool(row.is_locked),
        "global_message": row.global_message,
        "last_broadcast": row.last_broadcast,
        "delivery_base_fee": float(row.delivery_base_fee) if row.delivery_base_fee is not None else None,
        "updated_at": row.updated_at,
    }


async def ensure_open(session: AsyncSession, actor: Actor | None = None) -> dict:
    """
    Return the current settings, or raise AppLockedError while the app is
    locked. The admin is never locked out; ``actor=None`` means a caller
    that cannot be the admin.
    """
    app = await load_app_settings(session)
    if app["is_locked"] and not (actor is not None and actor.is_admin):
        raise AppLockedError(app["global_message"] or "the marketplace is closed for maintenance")
    return app
