"""Request tracking and error translation for the HTTP surface.

Every response carries ``X-Request-ID`` (taken from the request when the
caller sent one) and ``X-Process-Time``. The request id is bound into the
structlog context so log lines emitted while handling the request, and
the JSON error bodies produced here, can be matched up.
"""

import logging
import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health",)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request ID and timing to every request/response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} raised after {duration_ms:.0f}ms: {exc}"
            )
            detail = "Internal server error" if get_settings().is_production else (str(exc) or "Internal server error")
            return JSONResponse(
                status_code=500,
                content={"detail": detail, "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration_ms = (time.monotonic() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        if request.url.path not in _QUIET_PATHS:
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(level, f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)")

        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    from core.exceptions import AutomationError, ValidationError

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        content = {"detail": exc.message, "request_id": getattr(request.state, "request_id", None)}
        if exc.issues:
            content["issues"] = exc.issues
        if exc.changes:
            content["changes"] = exc.changes
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(AutomationError)
    async def automation_error_handler(request: Request, exc: AutomationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "request_id": getattr(request.state, "request_id", None)},
        )
