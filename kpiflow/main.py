"""KPIFlow — FastAPI Application Entry Point.

Metric refresh pipeline, AI-generated transformers and goal tracking.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kpiflow.config import settings
from kpiflow.database import init_db, test_connection
from kpiflow.scheduler.jobs import scheduler, start_scheduler, stop_scheduler
from kpiflow.api.pipeline_routes import router as pipeline_router
from kpiflow.api.goal_routes import router as goal_router
from kpiflow.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 KPIFlow starting up...")
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
    logger.info("KPIFlow shut down")


app = FastAPI(
    title="KPIFlow",
    description="Refresh KPI metrics from third-party APIs, turn payloads into time series and chart configs with AI-generated transformers, and track goals.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(pipeline_router)
app.include_router(goal_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    db_ok = test_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "kpiflow",
        "version": "1.0.0",
        "database": "connected" if db_ok else "unavailable",
        "scheduler": "running" if scheduler.running else "stopped",
    }
