"""FastAPI dependencies for database sessions, authentication and gateways."""
from typing import AsyncGenerator, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.auth.jwt import jwt_auth
from subscription_engine.config import settings
from subscription_engine.database import AsyncSessionLocal
from subscription_engine.services.gateway_service import load_registry

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Get current authenticated caller from the bearer JWT.

    Returns:
        dict: Decoded claims (sub, role)

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    try:
        payload = jwt_auth.verify_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug("caller_authenticated", user_id=payload.get("sub"), role=payload.get("role"))
    return payload


def ensure_user_access(current_user: dict, user_id: int) -> None:
    """
    Allow callers to act on their own records; admins may act on anyone's.

    Raises:
        HTTPException: 403 if the caller is neither the user nor an admin
    """
    if current_user.get("role") == "admin":
        return
    if current_user.get("sub") != str(user_id):
        logger.warning("cross_user_access_denied", caller=current_user.get("sub"), user_id=user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this user")


async def get_gateway_registry(db: AsyncSession = Depends(get_db)) -> GatewayRegistry:
    """Adapters built from stored gateway configs, falling back to settings."""
    return await load_registry(db, settings)
