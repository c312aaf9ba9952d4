"""FastAPI entrypoint: wires config, container, routes, and lifecycle hooks."""

from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ccrelay.api.http.health import router as health_router
from ccrelay.api.http.sessions import router as sessions_router
from ccrelay.api.stream.sse import router as sse_router
from ccrelay.api.ws.browser import router as browser_router
from ccrelay.api.ws.cli import router as cli_router
from ccrelay.core.config import Settings
from ccrelay.core.container import build_container
from ccrelay.core.lifecycle import on_shutdown, on_startup
from ccrelay.infra.observability.logger import get_logger, setup_logging

access_logger = get_logger("uvicorn.access")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    container = build_container(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        on_startup(container)
        try:
            yield
        finally:
            await on_shutdown(container)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.access_log_enabled:

        @app.middleware("http")
        async def access_log(request: Request, call_next):
            start = perf_counter()
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                duration_ms = (perf_counter() - start) * 1000
                query = f"?{request.url.query}" if request.url.query else ""
                path = f"{request.url.path}{query}"
                client_ip = request.client.host if request.client else "-"
                access_logger.info(
                    '%s "%s %s" %s %.2fms',
                    client_ip,
                    request.method,
                    path,
                    status_code,
                    duration_ms,
                )

    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(sse_router)
    app.include_router(cli_router)
    app.include_router(browser_router)

    return app


def run() -> None:
    settings = Settings.from_env()
    uvicorn.run(
        "ccrelay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
