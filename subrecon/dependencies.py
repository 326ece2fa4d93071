"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.config import settings
from subrecon.core.errors import AuthenticationError
from subrecon.core.security import decode_token
from subrecon.db.session import get_db
from subrecon.services.validators.registry import ValidatorRegistry, get_registry

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID
DEV_USER_ID = "dev-user-00000000-0000-0000-0000-000000000001"


def _user_id_from_token(credentials: HTTPAuthorizationCredentials) -> Optional[str]:
    payload = decode_token(credentials.credentials)
    if payload is None:
        return None

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id.strip():
        return None
    return user_id.strip()


async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    Get the authenticated caller's user id.

    Raises 401 if not authenticated or token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user.
    """
    if settings.auth_disabled:
        user_id = DEV_USER_ID
    else:
        if credentials is None:
            exc = AuthenticationError()
            exc.headers = {"WWW-Authenticate": "Bearer"}
            raise exc

        user_id = _user_id_from_token(credentials)
        if user_id is None:
            exc = AuthenticationError("Invalid or expired token")
            exc.headers = {"WWW-Authenticate": "Bearer"}
            raise exc

    # Picked up by the New Relic middleware
    request.state.user_id = user_id
    return user_id


def get_validator_registry() -> ValidatorRegistry:
    """Validator registry dependency (overridable in tests)."""
    return get_registry()


# Type alias for authenticated caller dependency
CurrentUser = Annotated[str, Depends(get_current_user_id)]
Registry = Annotated[ValidatorRegistry, Depends(get_validator_registry)]
