"""FastAPI app exposing a Paramedic server's state."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..health.scheduler import Server, StartOptions
from ..health.view import StatusView
from .routes import attach_event_stream, status_router

logger = logging.getLogger(__name__)


def create_app(
    server: Server,
    options: StartOptions | Mapping[str, Any] | None = None,
) -> FastAPI:
    """Build the API app; its lifespan starts and stops ``server``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            app.state.view = await server.start(options)
        except Exception:
            logger.exception("Paramedic server failed to start")
        yield
        await server.stop()

    app = FastAPI(title=server.title, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.state.server = server
    app.state.view = StatusView(server)
    app.state.event_queues = []
    attach_event_stream(server, app.state.event_queues)

    app.include_router(status_router, prefix="/api")
    return app
