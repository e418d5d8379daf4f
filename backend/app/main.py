"""Workflow Automation Engine - FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.container import build_runtime
from api.v1.router import api_v1_router
from api.routes import health
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    # Refuse to start production without an encryption key
    settings.validate_secrets()

    runtime = getattr(app.state, "runtime", None) or build_runtime(settings)
    app.state.runtime = runtime
    await runtime.start()
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT}, "
        f"queue={runtime.queue.mode})"
    )

    yield

    logger.info("Application shutting down, draining queue")
    await runtime.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Declarative workflow execution engine with queued, "
                    "rate-limited and circuit-broken capability calls.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID", "X-Organization-ID",
                       settings.WEBHOOK_SIGNATURE_HEADER],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers and k8s liveness checks)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API, all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
