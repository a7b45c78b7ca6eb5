"""Engine error taxonomy.

Services raise these; the API layer maps them onto HTTP responses in
``subscription_engine.main``.
"""
from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(EngineError):
    """Plan, pricing, feature, subscription or transaction is absent."""

    code = "not_found"


class LimitExceeded(EngineError):
    """A count-limited feature has no remaining allowance."""

    code = "limit_exceeded"

    def __init__(self, feature_code: str, plan_name: str, limit: int, used: int):
        super().__init__(
            f"Usage limit reached for '{feature_code}' on the {plan_name} plan ({used}/{limit})",
            feature_code=feature_code,
            plan_name=plan_name,
            limit=limit,
            used=used,
        )
        self.feature_code = feature_code
        self.plan_name = plan_name
        self.limit = limit
        self.used = used


class Conflict(EngineError):
    """Uniqueness violation or a concurrent modification of the same record."""

    code = "conflict"


class GatewayError(EngineError):
    """External payment processor timed out or rejected the request."""

    code = "gateway_error"


class ValidationError(EngineError):
    """Malformed amount or unsupported currency/region combination."""

    code = "validation_error"


class InvariantViolation(EngineError):
    """Internal consistency failure. Never recovered automatically."""

    code = "invariant_violation"


class Unauthorized(EngineError):
    """The user has no subscription that entitles the requested action."""

    code = "unauthorized"


class FeatureUnavailable(Unauthorized):
    """The feature is not part of (or is disabled on) the user's plan."""

    code = "feature_unavailable"
