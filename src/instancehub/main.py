"""Instance hub FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from instancehub import __version__
from instancehub.api.dependencies import close_manager, init_manager
from instancehub.api.errors import HubError
from instancehub.api.v1 import databases_router, health_router, instances_router
from instancehub.config import get_hub_config
from instancehub.logging import setup_logging
from instancehub.logging_schema import LogEvent
from instancehub.metrics import get_metrics_response

# Configure logging using config
_config = get_hub_config()
setup_logging(_config.logging)
logger = logging.getLogger(__name__)

_PUBLIC_PATHS = ("/health", "/metrics")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "Starting instance hub",
        extra={
            "event": LogEvent.APP_STARTED,
            "version": __version__,
            "base_path": str(_config.instances.base_path),
        },
    )

    # Reloads the registry and starts reconciliation
    await init_manager(_config)

    yield
    logger.info("Shutting down instance hub", extra={"event": LogEvent.APP_STOPPED})
    await close_manager()


app = FastAPI(
    title="Instance Hub",
    description="Isolated worker instance orchestration",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    """Render HubError as the error envelope."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Hub error",
        extra={
            "event": LogEvent.HUB_ERROR,
            "error_code": exc.code.value,
            "error_message": exc.message,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with logging."""
    logger.exception(
        "Unhandled exception",
        extra={
            "event": LogEvent.UNHANDLED_EXCEPTION,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.middleware("http")
async def api_key_middleware(
    request: Request, call_next: Callable[[Request], Response]
) -> Response:
    """Require the bearer API key, when configured, outside health and metrics."""
    config = get_hub_config()

    if request.url.path in _PUBLIC_PATHS or not config.server.api_key:
        return await call_next(request)

    auth_header = request.headers.get("Authorization", "")
    if auth_header != f"Bearer {config.server.api_key}":
        return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

    return await call_next(request)


# /health without prefix for probes
app.include_router(health_router)


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return get_metrics_response()


app.include_router(instances_router, prefix="/api/v1")
app.include_router(databases_router, prefix="/api/v1")


def main() -> None:
    """Run the hub server."""
    config = get_hub_config()
    uvicorn.run(
        "instancehub.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
