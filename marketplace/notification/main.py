"""
Notification Service — FastAPI entry point

Has no command endpoints: on startup it launches the order_events
subscriber as a background task and stops it on shutdown. Device tokens
are read from the profiles table the catalog service writes.

┌───────────────┐  order_events  ┌──────────────────────┐   HTTP   ┌──────────────┐
│ Order Service │ ──── Redis ──▶ │ Notification Service │ ───────▶ │ Push gateway │
└───────────────┘    Pub/Sub     └──────────────────────┘          └──────────────┘

Run with:  uvicorn marketplace.notification.main:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import Settings, get_settings
from ..web import make_lifespan
from .push import PushChannel, TokenDirectory
from .subscriber import run_subscriber


def create_app(settings: Settings | None = None, push: PushChannel | None = None) -> FastAPI:
    settings = settings or get_settings()
    push = push or PushChannel(settings)
    database = make_lifespan(settings, with_redis=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with database(app):
            shutdown_event = asyncio.Event()
            subscriber_task = asyncio.create_task(
                run_subscriber(settings.redis_url, push, TokenDirectory(app.state.sessions), shutdown_event)
            )
            yield
            shutdown_event.set()
            subscriber_task.cancel()
            try:
                await subscriber_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Notification Service", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "notification-service", "push_enabled": bool(settings.push_url)}

    return app
