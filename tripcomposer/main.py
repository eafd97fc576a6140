"""TripComposer application entry point.

Quick Start:
    $ tripcomposer             # Start the API server
    $ tripcomposer-cli --help  # Maintenance commands

Environment:
    TRIPCOMPOSER_ENV           # development/production (default: development)
    TRIPCOMPOSER_LOG_LEVEL     # DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tripcomposer import __version__
from tripcomposer.api.routes import router, set_orchestrator
from tripcomposer.config import get_settings
from tripcomposer.database import close_db, init_db
from tripcomposer.errors import TripComposerError
from tripcomposer.logging_config import get_logger, setup_logging
from tripcomposer.orchestrator import Orchestrator

setup_logging()
logger = get_logger(__name__)

_orchestrator: Orchestrator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    global _orchestrator
    settings = get_settings()
    logger.info("tripcomposer_starting", version=__version__, env=settings.tripcomposer_env)

    await init_db()

    _orchestrator = Orchestrator()
    set_orchestrator(_orchestrator)
    await _orchestrator.startup()

    logger.info(
        "tripcomposer_ready",
        version=__version__,
        event_bus=settings.event_bus_backend,
        scheduled_tasks=len(_orchestrator.scheduler.list_tasks()),
    )

    yield

    await _graceful_shutdown()


async def _graceful_shutdown() -> None:
    """Stop the orchestrator and release the database pool."""
    global _orchestrator
    logger.info("tripcomposer_shutting_down")
    if _orchestrator:
        try:
            await _orchestrator.shutdown()
        except Exception as exc:
            logger.warning("orchestrator_shutdown_error", error=str(exc))
        _orchestrator = None
    set_orchestrator(None)

    try:
        await close_db()
    except Exception as exc:
        logger.warning("db_close_error", error=str(exc))
    logger.info("tripcomposer_stopped")


async def _domain_error_handler(request: Request, exc: TripComposerError) -> JSONResponse:
    """Render domain errors as ``{"error": {code, message, details}}``."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app() -> FastAPI:
    """Build the FastAPI application with routes and error handling."""
    app = FastAPI(
        title="TripComposer",
        description="Travel marketplace core: matching, bookings, disputes and trust",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TripComposerError, _domain_error_handler)
    app.include_router(router, prefix="/api")
    return app


app = create_app()


def main() -> None:
    """Start the API server."""
    settings = get_settings()
    uvicorn.run(
        "tripcomposer.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.tripcomposer_env == "development",
        log_level=settings.tripcomposer_log_level.lower(),
    )


if __name__ == "__main__":
    main()
