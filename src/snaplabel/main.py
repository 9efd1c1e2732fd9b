"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snaplabel.api.routes import router
from snaplabel.config import get_settings
from snaplabel.ml.errors import InitializationError
from snaplabel.ml.session import SessionController

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the session on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info("Starting SnapLabel (platform=%s, top_k=%s)", settings.platform, settings.top_k)

    controller = SessionController(settings)
    app.state.controller = controller
    try:
        await controller.start()
    except InitializationError:
        # Stay up so /health can report the failure; classification requests get 503.
        logger.error("SnapLabel started without a model")
    else:
        logger.info("SnapLabel ready")
    yield

    logger.info("Shutting down SnapLabel")
    controller.shutdown()
    logger.info("SnapLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Photo classification service for mobile and web clients",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("snaplabel.main:app", host=settings.host, port=settings.port)
