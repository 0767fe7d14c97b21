"""
Bearer token authentication.

Tokens are issued by the upstream identity service; this module only
verifies them and extracts the caller's identity, role and organization.
"""

from datetime import datetime, timezone
from typing import Annotated, Any
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from dnc_engine.config import Settings, get_settings
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="User ID")
    organization_id: UUID = Field(..., description="Organization the user acts for")
    role: str = Field(..., description="User role")
    email: str | None = Field(default=None, description="User email")


class TokenError(Exception):
    """Raised when a bearer token cannot be accepted."""

    def __init__(self, message: str, code: str = "INVALID_TOKEN") -> None:
        super().__init__(message)
        self.code = code


class JWTTokenValidator:
    """JWT access-token validator."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def validate_access_token(self, token: str) -> dict[str, Any]:
        """Validate an access token and return its payload.

        Raises:
            TokenError: If the token is expired, malformed or of the wrong type.
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_secret_key,
                algorithms=[self._settings.jwt_algorithm],
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenError("Token expired", "TOKEN_EXPIRED") from e
        except jwt.InvalidTokenError as e:
            raise TokenError(f"Invalid token: {e}") from e

        if payload.get("type", "access") != "access":
            raise TokenError("Invalid token type")
        return payload

    def create_access_token(
        self,
        user_id: UUID,
        organization_id: UUID,
        role: str,
        email: str | None = None,
        expires_in_seconds: int = 3600,
    ) -> str:
        """Issue an access token (used by tooling and tests)."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "org": str(organization_id),
            "role": role,
            "email": email,
            "type": "access",
            "iat": int(now.timestamp()),
            "exp": int(now.timestamp()) + expires_in_seconds,
        }
        return jwt.encode(
            payload,
            self._settings.jwt_secret_key,
            algorithm=self._settings.jwt_algorithm,
        )


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> CurrentUser:
    """Extract and validate the current user from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing or invalid.
    """
    client_ip = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning(
            "Missing authentication credentials",
            extra={"endpoint": str(request.url.path), "client_ip": client_ip},
        )
        raise _unauthorized("MISSING_TOKEN", "Not authenticated")

    validator = JWTTokenValidator(get_settings())
    try:
        payload = validator.validate_access_token(credentials.credentials)
        user = CurrentUser(
            id=UUID(str(payload["sub"])),
            organization_id=UUID(str(payload["org"])),
            role=str(payload.get("role", "viewer")),
            email=payload.get("email"),
        )
    except TokenError as e:
        logger.warning(
            "Token validation failed",
            extra={"endpoint": str(request.url.path), "client_ip": client_ip, "error": str(e)},
        )
        raise _unauthorized(e.code, str(e)) from e
    except (KeyError, ValueError) as e:
        logger.warning(
            "Token validation failed",
            extra={"endpoint": str(request.url.path), "client_ip": client_ip, "error": str(e)},
        )
        raise _unauthorized("INVALID_TOKEN", "Invalid token claims") from e

    return user
