"""
JWT token service for API authentication.

Tokens are issued at the end of the upstream connect flow and carry the
organization the caller acts for.
"""
from datetime import timedelta
from jose import JWTError, jwt
from peoplesync.clock import utcnow
from peoplesync.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, org_id: str, role: str = "admin", email: str | None = None) -> str:
        """
        Create a JWT token scoped to one organization.

        Args:
            subject: Upstream user id of the person who connected
            org_id: Organization ID
            role: Role within the organization
            email: Contact email, if known

        Returns:
            Encoded JWT token string
        """
        expires = utcnow() + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "org_id": org_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
