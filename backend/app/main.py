"""Workflow Scheduler - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.dependencies import ServiceContainer, build_container
from api.v1.router import api_v1_router
from api.routes import health
from db.database import AsyncSessionLocal, close_db, init_db
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from core.metrics import MetricsMiddleware, metrics_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    # Validate secrets are not using defaults in production
    try:
        settings.validate_secrets()
    except RuntimeError as e:
        logger.critical(f"[startup] FATAL: {e}")
        raise

    # A container handed to create_app() is owned (and torn down) by the caller
    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        await init_db()
        app.state.container = build_container(AsyncSessionLocal, settings)
        logger.info("[startup] Database ready, scheduler services wired")
    container: ServiceContainer = app.state.container

    # In-process dispatch loop; Celery beat can drive the same ticks instead
    dispatch_loop = None
    if settings.SCHEDULER_DISPATCH_ENABLED:
        dispatch_loop = container.dispatch_loop()
        dispatch_loop.start()
        logger.info(
            f"[startup] Dispatch loop started ({settings.SCHEDULER_POLL_INTERVAL_SECONDS}s interval)"
        )

    logger.info(f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})")
    yield
    # Shutdown: let the current tick finish before closing the pool
    if dispatch_loop is not None:
        await dispatch_loop.stop()
    await container.drain()
    if owns_container:
        await close_db()
    logger.info("[shutdown] Application shutting down...")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Pre-built services (tests pass one wired to fakes).
            When omitted, the lifespan builds one on the configured database.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Cron-driven scheduling of workflow executions, "
                    "multi-tenant, safe under multiple dispatchers.",
        debug=settings.DEBUG,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Prometheus metrics middleware (outermost, measures all requests)
    app.add_middleware(MetricsMiddleware)

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    # Prometheus metrics (unauthenticated, for scrapers)
    app.include_router(metrics_router)

    return app


app = create_app()
