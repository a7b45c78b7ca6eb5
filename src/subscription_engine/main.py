"""FastAPI application entry point."""
import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from subscription_engine.api.v1 import entitlements, gateways, health, payments, plans, subscriptions
from subscription_engine.api.webhooks import razorpay as razorpay_webhooks
from subscription_engine.api.webhooks import stripe as stripe_webhooks
from subscription_engine.config import settings
from subscription_engine.errors import (
    Conflict,
    EngineError,
    GatewayError,
    InvariantViolation,
    LimitExceeded,
    NotFound,
    Unauthorized,
    ValidationError,
)
from subscription_engine.middleware.logging import LoggingMiddleware, get_request_id, setup_logging
from subscription_engine.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

setup_logging()
logger = structlog.get_logger(__name__)

# Most specific class first; FeatureUnavailable falls under Unauthorized.
ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (LimitExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (Conflict, status.HTTP_409_CONFLICT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
]


def status_for(exc: EngineError) -> int:
    """HTTP status an engine error maps to."""
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(request: Request, error: str, message: str, code: str, details=None) -> dict:
    return ErrorResponse(
        error=error,
        message=message,
        code=code,
        details=jsonable_encoder(details),
        remediation=REMEDIATION_HINTS.get(code),
        request_id=get_request_id(request),
    ).model_dump(mode="json")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="Subscription & Entitlement Engine",
    description="Plans, regional pricing, metered entitlements and gateway reconciliation",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError) -> JSONResponse:
    """
    Map engine errors onto HTTP responses.

    LimitExceeded becomes 429 with the feature, plan, limit and usage in
    ``details``; gateway failures become 502; invariant violations are
    logged as errors and answered with 500.
    """
    status_code = status_for(exc)
    if isinstance(exc, InvariantViolation):
        logger.error("invariant_violation", message=exc.message, details=exc.details)
    else:
        logger.warning("engine_error", code=exc.code, message=exc.message, status_code=status_code)

    return JSONResponse(
        status_code=status_code,
        content=error_body(request, type(exc).__name__, exc.message, exc.code, exc.details or None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
        ).model_dump()
        for error in exc.errors()
    ]

    logger.warning("request_validation_failed", error_count=len(details))

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            request, "ValidationError", "Request validation failed", ErrorCode.VALIDATION_ERROR, details
        ),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Return 503 for database failures."""
    logger.error("database_error", error_type=type(exc).__name__, error_message=str(exc))

    message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=error_body(request, "DatabaseError", message, ErrorCode.DATABASE_ERROR),
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 500 without exposing internals; the stack trace goes to the log."""
    logger.exception(
        "unhandled_exception",
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        stack_trace=traceback.format_exc(),
    )
    message = str(exc) if settings.debug else "An unexpected error occurred"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(request, "InternalServerError", message, ErrorCode.INTERNAL_ERROR),
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Subscription & Entitlement Engine",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


app.include_router(health.router, tags=["Health"])
app.include_router(plans.router, prefix="/v1", tags=["Plans"])
app.include_router(subscriptions.router, prefix="/v1", tags=["Subscriptions"])
app.include_router(entitlements.router, prefix="/v1", tags=["Entitlements"])
app.include_router(payments.router, prefix="/v1", tags=["Payments"])
app.include_router(gateways.router, prefix="/v1", tags=["Gateways"])
app.include_router(razorpay_webhooks.router)
app.include_router(stripe_webhooks.router)
