"""
FastAPI application factory for the monitoring API.

This file:
1. Creates the FastAPI app
2. Runs startup logic (create DB tables)
3. Registers all routers (jobs, queues, health)
4. Runs shutdown logic (dispose the engine)

The API is read-only: it lets operators inspect jobs, see per-state counts
and watch the permanently-failed feed. Producers enqueue through
JobOrchestrator.enqueue() in their own process, not over HTTP.

To run:  uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config.settings import settings
from models.base import async_engine, Base
from api.routers import jobs, queues, health

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create the delayed_jobs table if it doesn't exist.
    Shutdown: dispose the DB engine (closes the connection pool).
    """
    logger.info("Creating database tables...")
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Monitoring API ready")

    yield

    await async_engine.dispose()
    logger.info("API shut down")


def create_app() -> FastAPI:
    """Factory function that builds and configures the FastAPI application."""
    app = FastAPI(
        title="Delayed Jobs",
        description="Monitoring API for the database-backed job orchestrator",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(queues.router)

    return app


# This is what uvicorn imports: `uvicorn api.main:app`
app = create_app()
