"""Structured logging setup and request-scoped log context."""
import logging
import sys
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from subscription_engine.config import settings

# Probe and scrape traffic is logged at debug level only
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def setup_logging() -> None:
    """Configure structlog: JSON in production, colored console elsewhere."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.app_env == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=settings.app_env == "development"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )


def get_request_id(request: Request) -> str:
    """Request id bound by ``LoggingMiddleware``, or the caller's X-Request-ID."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id, path and method into structlog context vars.

    Every log line emitted while serving the request carries them. The id
    is taken from X-Request-ID when the caller sends one and echoed back.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )

        logger = structlog.get_logger(__name__)
        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log("request_started")
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("request_failed", exc_info=exc)
            raise

        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        response.headers["X-Request-ID"] = request_id
        return response
