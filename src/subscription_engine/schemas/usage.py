"""Pydantic schemas for entitlement checks."""
from datetime import datetime

from pydantic import BaseModel, Field


class ConsumeRequest(BaseModel):
    """Request to consume a feature allowance."""

    feature_code: str = Field(..., description="Stable feature code, e.g. resume_generation")
    amount: int = Field(default=1, ge=1, description="Units to consume")
    ai_model_type: str | None = Field(default=None, description="Model used for token-metered features")
    token_count: int | None = Field(default=None, ge=0, description="Tokens spent by the call")


class ConsumeResult(BaseModel):
    """Outcome of an allowed consumption. ``remaining`` is None when unlimited."""

    allowed: bool
    remaining: int | None = None
    feature_code: str
    limit: int | None = None
    used: int | None = None


class UsageSnapshot(BaseModel):
    """Read-only usage line for display."""

    feature_code: str
    used: int
    limit: int | None
    resets_at: datetime | None
