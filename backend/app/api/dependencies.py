"""
API Dependencies

FastAPI dependency injection for authentication and common services.

Security: session tokens are HS256 JWTs verified against AUTH_JWT_SECRET.
Never decode without verification.
"""

import logging
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.domain.services import EntitlementService
from app.infrastructure.db.repositories.user_preferences_repository import (
    UserPreferencesRepository,
    get_preferences_repository,
)


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _decode_with_secret(token: str) -> dict:
    """Verify a session JWT signed with the shared HS256 secret."""
    settings = get_settings()
    options = {"require": ["exp", "sub"]}
    kwargs = {}
    if settings.auth_jwt_issuer:
        kwargs["issuer"] = settings.auth_jwt_issuer
        options["require"].append("iss")
    return jwt.decode(
        token,
        settings.auth_jwt_secret,
        algorithms=["HS256"],
        audience=settings.auth_jwt_audience,
        options=options,
        **kwargs,
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Extract and verify user ID from a session JWT.

    Returns:
        Authenticated user ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = _decode_with_secret(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return user_id


# =============================================================================
# Service providers
# =============================================================================

def get_entitlement_service(
    repo: UserPreferencesRepository = Depends(get_preferences_repository),
) -> EntitlementService:
    """Dependency provider for EntitlementService."""
    return EntitlementService(repo)


UserIdDep = Annotated[str, Depends(get_current_user_id)]
EntitlementServiceDep = Annotated[EntitlementService, Depends(get_entitlement_service)]
