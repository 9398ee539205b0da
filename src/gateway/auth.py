"""Caller authentication for the gateway HTTP surface.

Callers present a bearer JWT carrying their id ('sub') and role ('role').
The role decides which tools the caller may see and invoke.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from shared.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
security = HTTPBearer(auto_error=False)


class Caller(BaseModel):
    """Authenticated caller identity."""
    user_id: str
    role: Optional[str] = None


class AuthConfig(BaseModel):
    """Authentication configuration."""
    secret_key: str
    token_expire_minutes: int = 60
    require_auth: bool = True
    default_role: str = "Viewer"


class AuthMiddleware:
    """Issues and verifies caller tokens."""

    def __init__(self, config: AuthConfig) -> None:
        self.config = config

    def create_token(self, user_id: str, role: str) -> str:
        """
        Create a JWT for a caller.

        Args:
            user_id: Caller identifier
            role: Caller role

        Returns:
            JWT token string
        """
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.config.token_expire_minutes)
        payload = {"sub": user_id, "role": role, "exp": expire}
        return jwt.encode(payload, self.config.secret_key, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> Caller:
        """
        Verify and decode a JWT.

        Raises:
            HTTPException: If the token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.config.secret_key, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.warning("Token verification failed", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        return Caller(user_id=payload.get("sub", ""), role=payload.get("role"))

    def authenticate(self, credentials: Optional[HTTPAuthorizationCredentials]) -> Caller:
        """Resolve the caller from request credentials."""
        if not self.config.require_auth:
            return Caller(user_id="anonymous", role=self.config.default_role)

        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        return self.verify_token(credentials.credentials)
