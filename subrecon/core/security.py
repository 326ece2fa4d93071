"""
Security Module
===============

Token utilities:
- Validation of caller access tokens issued by the identity provider
- Claim extraction from platform-signed JWS notification payloads
"""

import logging
from typing import Any, Optional

from jose import JWTError, jwt

from subrecon.config import settings

logger = logging.getLogger(__name__)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a caller access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return payload
    except JWTError:
        return None


def read_signed_claims(signed_payload: str) -> dict[str, Any]:
    """
    Read the claims of a platform-signed JWS without verifying its signature.

    Notification payloads are never trusted for entitlement on their own:
    every state change they trigger is bounded by the state machine, and
    renewals are re-checked with the platform.

    Raises:
        ValueError: if the payload is not a well-formed JWS
    """
    try:
        return jwt.get_unverified_claims(signed_payload)
    except JWTError as e:
        logger.warning("Unreadable signed payload: %s", e)
        raise ValueError("Malformed signed payload") from e
