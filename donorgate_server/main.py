# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""DonorGate Server - Main FastAPI application."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from donorgate_server import __version__
from donorgate_server.container import Container, build_container
from donorgate_server.database import init_db
from donorgate_server.errors import DonorGateError
from donorgate_server.routers import admin, donor, share, webhook
from donorgate_server.services.admin_credentials import ensure_credentials

logger = logging.getLogger(__name__)


def _cors_origins(raw: str) -> list[str]:
    return [o.strip() for o in (raw or "").split(",") if o.strip()]


def create_app(container: Container | None = None) -> FastAPI:
    """Build the application. Without a container one is wired from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        if getattr(app.state, "container", None) is None:
            from donorgate_server.config import settings

            app.state.container = build_container(settings)
        current: Container = app.state.container
        await init_db(current.engine)
        await asyncio.to_thread(
            ensure_credentials, current.settings.admin_credentials_path, current.settings.admin_username
        )
        if current.settings.sweepers_enabled:
            current.sweeper.start()
        yield
        await current.sweeper.shutdown(current.settings.shutdown_timeout_seconds)
        await current.engine.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="DonorGate Server",
        description="Donation-backed media server access",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.container = container

    if container is not None:
        origins = _cors_origins(container.settings.cors_origins)
    else:
        from donorgate_server.config import settings

        origins = _cors_origins(settings.cors_origins)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log method, path, status, and duration for each request (no body or auth headers)."""
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    @app.exception_handler(DonorGateError)
    async def donorgate_error_handler(request: Request, exc: DonorGateError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(donor.router)
    app.include_router(admin.router)
    app.include_router(share.router)
    app.include_router(webhook.router)

    @app.get("/health")
    async def health():
        """Health check for load balancers."""
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    from donorgate_server.config import settings

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("donorgate_server.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
