"""HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds and starts the :class:`~calsync.runtime.Runtime`
  (storage, providers, scheduler) and stops it on shutdown
- Health endpoint at GET /api/health
- Webhook receiver, sync-now, connection and OAuth routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calsync.api.middleware import register_error_handlers
from calsync.api.routers.connections import router as connections_router
from calsync.api.routers.oauth import router as oauth_router
from calsync.api.routers.sync import router as sync_router
from calsync.api.routers.webhooks import router as webhooks_router
from calsync.config import CalsyncConfig, load_config
from calsync.runtime import Runtime

logger = logging.getLogger(__name__)


def create_app(
    runtime: Runtime | None = None,
    *,
    config: CalsyncConfig | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    runtime:
        A pre-built runtime.  When omitted, one is built from *config* (or
        :func:`~calsync.config.load_config`) during startup.
    run_scheduler:
        Whether the fallback scheduler runs inside this process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = app.state.runtime
        if rt is None:
            rt = Runtime.from_config(config or load_config())
            app.state.runtime = rt
        await rt.start(run_scheduler=run_scheduler)
        logger.info("calsync API started")
        try:
            yield
        finally:
            await rt.stop()
            logger.info("calsync API stopped")

    app = FastAPI(title="calsync", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False
    app.state.runtime = runtime

    register_error_handlers(app)

    app.include_router(webhooks_router)
    app.include_router(sync_router)
    app.include_router(connections_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
