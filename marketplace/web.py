"""
Shared FastAPI plumbing — lifespan, caller identity, error mapping.

Every service builds its engine, session factory and Redis client inside
its lifespan and keeps them on app.state; nothing is created at import time.
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .actors import Actor, Role
from .config import Settings
from .errors import ExternalServiceError, MarketplaceError
from .schema import create_schema

logger = logging.getLogger(__name__)


def make_lifespan(
    settings: Settings,
    redis: aioredis.Redis | None = None,
    with_redis: bool = True,
):
    """
    Lifespan that opens the database and Redis for the app's lifetime.

    Pass ``redis`` to reuse an existing client (it is then not closed here).
    Services that never publish set ``with_redis=False``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        app.state.settings = settings
        app.state.sessions = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        owns_redis = with_redis and redis is None
        app.state.redis = redis
        if owns_redis:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        if owns_redis:
            await app.state.redis.aclose()
        await engine.dispose()

    return lifespan


def current_actor(
    x_actor_id: str = Header(...),
    x_actor_role: Role = Header(...),
) -> Actor:
    """Caller identity as forwarded by the identity provider; the id is opaque."""
    return Actor(id=x_actor_id, role=x_actor_role)


async def _handle_marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
    if isinstance(exc, ExternalServiceError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, _handle_marketplace_error)
