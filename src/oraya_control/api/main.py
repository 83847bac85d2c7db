"""FastAPI application for the Oraya control plane."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from oraya_control import __version__
from oraya_control.api.admin.router import router as admin_router
from oraya_control.api.auth.router import router as auth_router
from oraya_control.api.billing.router import router as billing_router
from oraya_control.api.bridge.router import router as bridge_router
from oraya_control.api.bridge.tokens import router as tokens_router
from oraya_control.api.errors import register_exception_handlers
from oraya_control.api.license.router import router as license_router
from oraya_control.api.utils.logging import configure_logging
from oraya_control.db import close_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Oraya control plane %s starting", __version__)
    yield
    await close_engine()
    logger.info("Oraya control plane stopped")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Oraya Control Plane",
        version=__version__,
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(bridge_router)
    app.include_router(tokens_router)
    app.include_router(license_router)
    app.include_router(billing_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
