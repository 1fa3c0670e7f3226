"""
Order Service — event store

Events are appended to the event_store table and replayed to rebuild
aggregates. The (aggregate_id, version) primary key is the optimistic
lock: an append at an already-taken version fails, so a writer that
decided on stale state can never overwrite a concurrent writer.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError


class VersionConflict(ConflictError):
    """Another writer appended the expected version first."""


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    Append one event at expected_version + 1 and return the new version.

    Raises VersionConflict when the version is already taken. The session's
    transaction is left for the caller to roll back.
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO event_store
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
            """),
            {
                "agg_id": aggregate_id,
                "agg_type": aggregate_type,
                "evt_type": event_type,
                "evt_data": json.dumps(event_data, default=str),
                "version": new_version,
                "now": datetime.now(timezone.utc).isoformat(),
            },
        )
    except IntegrityError as exc:
        raise VersionConflict(
            f"{aggregate_type} {aggregate_id} already has version {new_version}"
        ) from exc
    return new_version


def _decode(data):
    return json.loads(data) if isinstance(data, str) else data


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """Return the aggregate's events in version order."""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": _decode(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]


async def load_all_events(session: AsyncSession, limit: int = 500) -> list[dict]:
    """Every event in time order (admin audit view)."""
    result = await session.execute(
        text("""
            SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
            FROM event_store
            ORDER BY created_at ASC, version ASC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [
        {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            "event_type": row.event_type,
            "event_data": _decode(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
