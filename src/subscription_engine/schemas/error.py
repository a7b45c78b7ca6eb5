"""Structured error response schemas."""
from datetime import datetime
from typing import Any
from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    This provides consistent error responses across the API with:
    - Machine-readable error codes
    - Human-readable messages
    - Remediation hints
    - Request tracing information
    """

    error: str = Field(..., description="Error type (e.g., 'LimitExceeded', 'NotFound', 'Conflict')")
    message: str = Field(..., description="Primary error message")
    code: str = Field(..., description="Machine-readable error code")
    details: list[ErrorDetail] | dict[str, Any] | None = Field(default=None, description="Additional error context")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "LimitExceeded",
                "message": "Usage limit reached for 'resume_generation' on the Basic plan (3/3)",
                "code": "limit_exceeded",
                "details": {"feature_code": "resume_generation", "plan_name": "Basic", "limit": 3, "used": 3},
                "remediation": "Upgrade your plan to continue using this feature.",
                "request_id": "req_1234567890",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    )


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FEATURE_UNAVAILABLE = "feature_unavailable"
    GATEWAY_ERROR = "gateway_error"
    INVARIANT_VIOLATION = "invariant_violation"
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.VALIDATION_ERROR: "Check the API documentation for correct request format at /docs",
    ErrorCode.NOT_FOUND: "Verify the identifier is correct and the resource is active",
    ErrorCode.LIMIT_EXCEEDED: "Upgrade your plan to continue using this feature.",
    ErrorCode.CONFLICT: "The resource was modified concurrently or already exists. Retry the request.",
    ErrorCode.UNAUTHORIZED: "Subscribe to a plan to access this feature.",
    ErrorCode.FEATURE_UNAVAILABLE: "This feature is not included in your plan. Upgrade to unlock it.",
    ErrorCode.GATEWAY_ERROR: "The payment provider is temporarily unavailable. Please try again later.",
    ErrorCode.INVARIANT_VIOLATION: "Contact support. This record needs manual review.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
