"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from beeylo_sync.api import router as api_router
from beeylo_sync.config import get_settings
from beeylo_sync.runtime import Runtime
from beeylo_sync.webhooks.handlers import router as webhook_router


def create_app(runtime: Runtime | None = None, *, start_workers: bool = True) -> FastAPI:
    """Build the app around ``runtime`` (one is created from settings if omitted).

    The lifespan starts the worker pools and periodic jobs and stops them on
    shutdown. Tests pass ``start_workers=False`` and drive the pools directly.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = app.state.runtime
        await rt.start(workers=start_workers)
        try:
            yield
        finally:
            await rt.stop()

    app = FastAPI(title="Beeylo Shopify Sync", lifespan=lifespan)
    app.state.runtime = runtime or Runtime(get_settings())

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(webhook_router)
    app.include_router(api_router)
    return app
