"""Bearer tokens for internal callers of the metering API.

Callers are other backend services and operators, not end users, so tokens
are signed with a shared HS256 secret from settings.
"""
from datetime import timedelta
from typing import Dict, Optional

import jwt

from metering.config import settings
from metering.utils.clock import utcnow


class JWTAuth:
    """JWT handler with a shared signing secret."""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.access_token_expire_minutes = 60

    def create_access_token(
        self,
        subject: str,
        role: str,
        expires_in: Optional[timedelta] = None,
        additional_claims: Optional[Dict] = None,
    ) -> str:
        """
        Create a signed access token.

        Args:
            subject: Calling service or operator name
            role: ``admin`` or ``service``
            expires_in: Lifetime (defaults to one hour)
            additional_claims: Additional JWT claims

        Returns:
            Encoded JWT token
        """
        now = utcnow()
        claims = {
            "sub": subject,
            "role": role,
            "iat": now,
            "exp": now + (expires_in or timedelta(minutes=self.access_token_expire_minutes)),
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
