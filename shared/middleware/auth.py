"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The JWT is validated here; users themselves live in the identity service,
so the principal is built from the token claims alone.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from config.redis_client import RedisCache, get_redis
from shared.models.models import LogSource, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class Principal:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.jti: Optional[str] = payload.get("jti")

    @property
    def source(self) -> LogSource:
        """Attendance-log source for actions taken by this principal."""
        return LogSource(self.role.value)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self) -> str:
        return f"<Principal {self.role.value} {self.user_id}>"


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> Principal:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        principal = Principal(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Check if token has been revoked (logged out)
    if principal.jti and await RedisCache(redis).is_token_revoked(principal.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return principal


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return principal


# Convenience role dependencies
require_student = RoleRequired(UserRole.STUDENT, UserRole.ADMIN)
require_teacher = RoleRequired(UserRole.TEACHER, UserRole.ADMIN)
require_admin = RoleRequired(UserRole.ADMIN)
