"""Number Pool Service.

Hosts the pool maintenance and provisioning retry jobs. The pool itself is
used in-process by the services in ``number_pool.services``.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from number_pool import __version__
from number_pool.core.config import settings
from number_pool.core.database import init_db
from number_pool.core.logging import logger, setup_logging
from number_pool.services.background_tasks import start_background_jobs, stop_background_jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    logger.info("Starting Number Pool Service", version=__version__, env=settings.app_env)

    await init_db()

    if settings.background_jobs_enabled:
        start_background_jobs()
        logger.info("Background jobs started")

    yield

    # Shutdown
    await stop_background_jobs()
    logger.info("Shutting down Number Pool Service")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)


@app.get("/")
async def root():
    """Root endpoint - basic service info."""
    return {
        "name": settings.app_name,
        "version": __version__,
        "status": "operational",
        "background_jobs": settings.background_jobs_enabled,
    }


# Simple health check for the load balancer (no DB required)
@app.get("/health")
async def health():
    """Simple health check for load balancer."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "number_pool.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
