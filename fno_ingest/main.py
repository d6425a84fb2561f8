"""
Application entry point.

Sets up the FastAPI app, connects MongoDB, ensures the snapshot indexes and
runs the ingestion scheduler for the lifetime of the process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from fno_ingest.api.router import api_router
from fno_ingest.core.config import Settings, get_settings
from fno_ingest.core.database import MongoDB
from fno_ingest.core.error_handling import AppError
from fno_ingest.services.scheduler import build_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events for startup and shutdown.

    Startup fails fast when MongoDB is unreachable; index creation is best
    effort. Shutdown stops the poll loops before the clients and the
    database connection are closed.
    """
    app_settings: Settings = app.state.settings
    logger.info("Starting application...")

    mongo = MongoDB(app_settings)
    logger.info("Connecting to mongodb...")
    await asyncio.to_thread(mongo.connect)
    app.state.mongo = mongo

    runtime = build_scheduler(app_settings, mongo)
    indexes = await asyncio.to_thread(runtime.repository.ensure_indexes)
    missing = [name for name, ok in indexes.items() if not ok]
    if missing:
        logger.warning(f"Unique indexes missing on {missing}; duplicate minute records are possible")

    app.state.runtime = runtime
    app.state.scheduler = runtime.scheduler
    if app_settings.START_SCHEDULER:
        await runtime.scheduler.start()
    else:
        logger.info("START_SCHEDULER is off; only on-demand triggers are served")

    logger.info("Application started successfully")
    yield

    # Shutdown
    logger.info("Shutting down application...")
    await runtime.scheduler.stop(timeout=app_settings.SHUTDOWN_TIMEOUT_S)
    await runtime.close()
    mongo.disconnect()
    logger.info("Shutdown complete")


def create_application(app_settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = app_settings or settings
    app = FastAPI(
        title=app_settings.APP_NAME,
        version=app_settings.APP_VERSION,
        description="Option chain, GEX levels and market breadth ingestion",
        lifespan=lifespan,
        debug=app_settings.DEBUG,
    )
    app.state.settings = app_settings

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        exc.log(logger)
        return JSONResponse(status_code=exc.status_code, content=exc.to_http_exception().detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "message": "An unexpected error occurred"},
        )

    # Include API router
    app.include_router(api_router, prefix=app_settings.API_PREFIX)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint that redirects to documentation."""
        return {"message": f"Welcome to {app_settings.APP_NAME}. See /docs for API documentation."}

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    # Run the application with uvicorn when script is executed directly
    uvicorn.run(
        "fno_ingest.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
