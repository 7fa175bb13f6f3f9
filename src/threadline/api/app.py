"""
Threadline FastAPI Application.

Receives gateway webhooks and exposes connection and conversation status.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from threadline import __version__
from threadline.api.routes import connections, conversations, webhook
from threadline.automation import AutomationDispatcher, get_automation_engine
from threadline.config import settings
from threadline.diagnostics import WebhookDiagnostics
from threadline.gateway import get_gateway
from threadline.logging_config import setup_logging
from threadline.pipeline.media import MediaResolver, default_media_store
from threadline.presence import PresenceTracker
from threadline.startup import run_all_startup_checks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Runs startup checks, then creates the process-scoped state routes
    depend on: presence tracker, diagnostics buffer, media resolver and
    the automation dispatch pool.
    """
    # Initialize logging first
    setup_logging(context="api")

    logger.info("Running startup checks...")
    run_all_startup_checks()
    logger.info("Startup checks passed")

    app.state.presence = PresenceTracker(ttl_seconds=settings.presence_ttl_seconds)
    app.state.diagnostics = WebhookDiagnostics(
        max_events=settings.webhook_events_max,
        preview_max_chars=settings.webhook_preview_max_chars,
        max_instances=settings.webhook_instances_max,
    )
    app.state.gateway_factory = get_gateway
    app.state.media_resolver = MediaResolver(default_media_store(), get_gateway)
    app.state.automation_engine = get_automation_engine()
    app.state.dispatcher = AutomationDispatcher(
        app.state.automation_engine, max_workers=settings.automation_max_workers
    )

    logger.info("Application startup complete")

    yield

    logger.info("Application shutdown initiated...")
    try:
        app.state.dispatcher.shutdown(wait=True)
        app.state.automation_engine.close()
        app.state.presence.shutdown()
        logger.info("Automation dispatch pool stopped")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)

    logger.info("Application shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="Threadline API",
    description="Webhook ingestion and conversation threading for messaging gateways",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint - API health check."""
    return {
        "status": "ok",
        "message": "Threadline API is running",
        "version": __version__,
    }


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    from threadline.db.connection import check_connection

    db_status = "healthy" if check_connection() else "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
    }


app.include_router(webhook.router, prefix="", tags=["webhook"])
app.include_router(connections.router, prefix="/connections", tags=["connections"])
app.include_router(
    conversations.router, prefix="/conversations", tags=["conversations"]
)

# Locally hosted attachments
app.mount(
    settings.media_url_path,
    StaticFiles(directory=settings.media_directory, check_dir=False),
    name="media",
)
