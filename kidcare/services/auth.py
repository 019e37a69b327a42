"""
Authentication service - access token verification.

Tokens are issued elsewhere; this service only checks the signature and
reads the user id from the ``sub`` claim.
"""
import logging
from typing import Optional

from jose import JWTError, jwt

from kidcare.core.config import settings
from kidcare.schemas.auth import TokenData

logger = logging.getLogger(__name__)


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        TokenData if valid, None if invalid, expired or without a numeric subject
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None

    subject = payload.get("sub")
    if subject is None:
        return None

    try:
        return TokenData(user_id=int(subject))
    except (TypeError, ValueError):
        return None
