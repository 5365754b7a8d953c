"""
Authentication dependencies for FastAPI.

SECURITY: Every organization-scoped route takes the organization from the
token, never from the request body.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from peoplesync.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # upstream user id
    org_id: str
    role: str
    email: str | None = None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.

    Usage:
        @router.post("/api/pco/refresh")
        async def refresh(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    payload = JWTService().verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(**payload)


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """Dependency that requires the admin role; raises 403 otherwise."""
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user
