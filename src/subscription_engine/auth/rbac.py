"""Role checks for API routes."""
from enum import Enum
from typing import Callable

import structlog
from fastapi import Depends, HTTPException, status

from subscription_engine.api.deps import get_current_user

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    """Caller roles carried in the ``role`` claim."""

    ADMIN = "admin"
    USER = "user"


# Higher roles inherit the permissions of lower ones
ROLE_HIERARCHY = {
    Role.ADMIN: [Role.ADMIN, Role.USER],
    Role.USER: [Role.USER],
}


def check_role_hierarchy(user_role: str, required_role: Role) -> bool:
    """
    Check if a role satisfies the required role, considering hierarchy.

    Example:
        >>> check_role_hierarchy("admin", Role.USER)
        True
        >>> check_role_hierarchy("user", Role.ADMIN)
        False
    """
    try:
        role = Role(user_role)
    except ValueError:
        logger.warning("invalid_role_check", role=user_role)
        return False
    return required_role in ROLE_HIERARCHY[role]


def require_role(required_role: Role) -> Callable:
    """
    Build a dependency that rejects callers below ``required_role``.

    Usage:
        @router.post("/plans", dependencies=[Depends(require_role(Role.ADMIN))])
    """

    async def dependency(current_user: dict = Depends(get_current_user)) -> dict:
        if not check_role_hierarchy(current_user.get("role", ""), required_role):
            logger.warning(
                "permission_denied",
                user_id=current_user.get("sub"),
                role=current_user.get("role"),
                required_role=required_role.value,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {required_role.value}",
            )
        return current_user

    return dependency


require_admin = require_role(Role.ADMIN)
