"""
FunnelWatch - funnel analytics sync and anomaly alerts
Main FastAPI Application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from urllib.parse import urlparse

from funnelwatch.core.config import settings
from funnelwatch.api.alerts import router as alerts_router
from funnelwatch.api.cron import router as cron_router
from funnelwatch.api.funnels import router as funnels_router
from funnelwatch.api.webhooks import router as webhooks_router

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting FunnelWatch API...")
    try:
        db_host = urlparse(getattr(settings, "DATABASE_URL", "")).hostname
        logger.info("Config: db_host=%s env=%s", db_host, settings.ENVIRONMENT)
    except ValueError:
        logger.info("Config: env=%s", settings.ENVIRONMENT)
    logger.info(
        "Event source config: api_key=%s project_id=%s embeddable_filter=%s slack=%s",
        bool(getattr(settings, "EVENT_SOURCE_API_KEY", "")),
        getattr(settings, "EVENT_SOURCE_PROJECT_ID", "") or "NOT SET",
        bool(getattr(settings, "EVENT_SOURCE_EMBEDDABLE_ID", "")),
        bool(getattr(settings, "SLACK_WEBHOOK_URL", "")),
    )
    yield
    logger.info("Shutting down FunnelWatch API...")


app = FastAPI(
    title="FunnelWatch API",
    description="Funnel analytics sync, daily rollups and anomaly alerts",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.DASHBOARD_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(cron_router, prefix="/api/cron", tags=["cron"])
app.include_router(webhooks_router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(funnels_router, prefix="/api/funnels", tags=["funnels"])
app.include_router(alerts_router, prefix="/api/alerts", tags=["alerts"])


@app.get("/health")
async def health_check():
    """Liveness check (should be fast and not depend on external services)."""
    return {
        "status": "ok",
        "service": "funnelwatch-backend",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "FunnelWatch API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
