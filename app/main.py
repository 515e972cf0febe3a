"""
Computed Properties API

Serves segment/user property definitions, assignment lookups and the
recently-updated feed, and runs the incremental assignment engine on an
interval in-process.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api.v2.router import api_router
from app.config import settings
from app.database import engine, init_db
from app.exceptions import register_exception_handlers
from app.middleware import CorrelationIdMiddleware
from app.middleware.correlation import CorrelationLogFilter
# Registers every table on Base.metadata before init_db()
from app.models import (  # noqa: F401
    Workspace, Segment, UserProperty, SegmentAssignment, UserPropertyAssignment,
    ComputedPropertyAssignment, ComputedPropertyPeriod, ManualSegmentMember, UserEvent,
)
from app.tasks.compute_properties import (
    get_scheduler,
    start_compute_properties_scheduler,
    stop_compute_properties_scheduler,
)

VERSION = "1.0.0"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] [ws=%(workspace_id)s] %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(CorrelationLogFilter())


configure_logging()
logger = logging.getLogger(__name__)


def allowed_origins() -> list[str]:
    origins = [settings.FRONTEND_URL]
    if not settings.is_production:
        origins.extend(["http://localhost:3000", "http://localhost:5173"])
    return origins


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Computed Properties API (%s)", settings.ENVIRONMENT)
    try:
        await init_db()
    except Exception as e:
        # SECURITY: the exception text can include the connection string
        logger.error("Database initialization failed: %s", type(e).__name__)

    if settings.COMPUTE_PROPERTIES_SCHEDULER_ENABLED:
        start_compute_properties_scheduler()
    else:
        logger.info("Compute properties scheduler disabled; use trigger-recompute")
    yield
    stop_compute_properties_scheduler()
    logger.info("Computed Properties API stopped")


app = FastAPI(
    title="Computed Properties API",
    description="Segments, user properties and incremental assignment computation",
    version=VERSION,
    docs_url="/docs" if settings.DOCS_ENABLED else None,
    redoc_url="/redoc" if settings.DOCS_ENABLED else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app, allowed_origins())

app.include_router(api_router, prefix="/api/v2")


@app.get("/")
async def root():
    response = {"name": "Computed Properties API", "version": VERSION, "health": "/health"}
    if settings.DOCS_ENABLED:
        response["docs"] = "/docs"
    return response


@app.get("/health")
async def health_check():
    """Liveness plus database reachability and scheduler state. Always 200."""
    database = "ok"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check database ping failed: %s", type(e).__name__)
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
        "database": database,
        "scheduler": "running" if get_scheduler().running else "stopped",
    }


# Development only
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=5001, reload=settings.DEBUG)
