"""JWT authentication with HS256 signing.

Tokens are issued by the surrounding platform; this engine only needs to
verify them and read the caller's user id and role.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

import jwt

from subscription_engine.config import settings


class JWTAuth:
    """JWT authentication handler with a shared signing secret."""

    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        """Initialize JWT auth from settings."""
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.access_token_expire_minutes = settings.access_token_expire_minutes

    def create_access_token(
        self,
        user_id: int,
        role: str,
        additional_claims: Optional[Dict] = None,
    ) -> str:
        """
        Create JWT access token.

        Args:
            user_id: Platform user id
            role: ``admin`` or ``user``
            additional_claims: Additional JWT claims

        Returns:
            Encoded JWT token
        """
        now = datetime.utcnow()
        expire = now + timedelta(minutes=self.access_token_expire_minutes)

        claims = {
            "sub": str(user_id),
            "role": role,
            "iat": now,
            "exp": expire,
            "type": "access",
        }
        if additional_claims:
            claims.update(additional_claims)

        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> Dict:
        """
        Verify and decode an access token.

        Raises:
            jwt.ExpiredSignatureError: If token is expired
            jwt.InvalidTokenError: If token is invalid or not an access token
        """
        payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        if payload.get("type") != "access":
            raise jwt.InvalidTokenError("Not an access token")
        return payload


# Global JWT auth instance
jwt_auth = JWTAuth()
