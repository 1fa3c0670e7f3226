"""
Database schema — event store and read models.

The DDL sticks to types that SQLite and PostgreSQL both accept so the same
statements run in tests and in production. Timestamps are ISO-8601 strings.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = [
    # (aggregate_id, version) is the optimistic lock: two writers appending the
    # same next version cannot both succeed.
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id   TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type     TEXT NOT NULL,
        event_data     TEXT NOT NULL,
        version        INTEGER NOT NULL,
        created_at     TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id                TEXT PRIMARY KEY,
        customer_id       TEXT NOT NULL,
        customer_name     TEXT NOT NULL DEFAULT '',
        store_id          TEXT NOT NULL,
        store_name        TEXT NOT NULL DEFAULT '',
        driver_id         TEXT,
        items             TEXT NOT NULL,
        items_total       DOUBLE PRECISION NOT NULL,
        delivery_fee      INTEGER NOT NULL,
        total_price       DOUBLE PRECISION NOT NULL,
        pickup_lat        DOUBLE PRECISION,
        pickup_lng        DOUBLE PRECISION,
        dropoff_lat       DOUBLE PRECISION,
        dropoff_lng       DOUBLE PRECISION,
        address           TEXT NOT NULL DEFAULT '',
        status            TEXT NOT NULL,
        version           INTEGER NOT NULL,
        rated_by_customer BOOLEAN NOT NULL DEFAULT FALSE,
        cancel_reason     TEXT,
        cancelled_by      TEXT,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders_read_model (status)",
    "CREATE INDEX IF NOT EXISTS ix_orders_driver ON orders_read_model (driver_id)",
    """
    CREATE TABLE IF NOT EXISTS profiles (
        role         TEXT NOT NULL,
        id           TEXT NOT NULL,
        name         TEXT NOT NULL,
        phone        TEXT NOT NULL DEFAULT '',
        image_url    TEXT NOT NULL DEFAULT '',
        category     TEXT,
        location     TEXT NOT NULL DEFAULT '',
        lat          DOUBLE PRECISION,
        lng          DOUBLE PRECISION,
        rating       DOUBLE PRECISION NOT NULL DEFAULT 0,
        review_count INTEGER NOT NULL DEFAULT 0,
        is_verified  BOOLEAN NOT NULL DEFAULT FALSE,
        fcm_token    TEXT,
        version      INTEGER NOT NULL DEFAULT 0,
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL,
        PRIMARY KEY (role, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        store_id    TEXT NOT NULL,
        name        TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price       DOUBLE PRECISION NOT NULL,
        category    TEXT,
        image_url   TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_products_store ON products (store_id)",
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id          TEXT PRIMARY KEY,
        target_role TEXT NOT NULL,
        target_id   TEXT NOT NULL,
        order_id    TEXT NOT NULL,
        author_role TEXT NOT NULL,
        author_id   TEXT NOT NULL,
        rating      INTEGER NOT NULL,
        comment     TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL
    )
    """,
    # one review per author, target and delivered order
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_reviews_per_order
        ON reviews (order_id, author_role, author_id, target_role, target_id)
    """,
    # single row keyed 'global'; a missing row means the defaults
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        id                TEXT PRIMARY KEY,
        is_locked         BOOLEAN NOT NULL DEFAULT FALSE,
        global_message    TEXT NOT NULL DEFAULT '',
        last_broadcast    TEXT,
        delivery_base_fee DOUBLE PRECISION,
        updated_at        TEXT NOT NULL
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
