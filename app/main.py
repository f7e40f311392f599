"""Metricpipe — FastAPI Application Entry Point.

Metric data pipeline: ingest integration data through generated
transformers and keep dashboard charts up to date.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db, test_connection, db_url
from app.scheduler.jobs import start_scheduler, stop_scheduler
from app.pipeline.tasks import supervisor
from app.api.pipeline_routes import router as pipeline_router
from app.api.dashboard_routes import router as dashboard_router
from app.api.cron_routes import router as cron_router
from app.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 Metricpipe starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    if supervisor.active_count:
        logger.info(f"Waiting for {supervisor.active_count} pipeline task(s) to finish...")
        await supervisor.join(timeout=settings.shutdown_grace_seconds)
    logger.info("Metricpipe shut down")


app = FastAPI(
    title="Metricpipe",
    description="Metric data pipeline — ingest integration data through generated transformers, build dashboard charts, report progress.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(pipeline_router)
app.include_router(dashboard_router)
app.include_router(cron_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "metricpipe",
        "version": "1.0.0",
        "active_pipeline_tasks": supervisor.active_count,
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    from app.database import _mask_url

    error = None
    connected = False
    try:
        connected = test_connection()
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }
