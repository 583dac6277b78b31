"""
JWT verification.

Tokens are issued by the platform's auth service; this process only
verifies them. Required claims: box_id (tenant) and user_id (the caller's
membership id).
"""

from jose import JWTError, jwt

from boxpulse.config import settings


class TokenError(Exception):
    """Raised when token validation fails."""

    pass


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT access token.

    Returns the payload dict with box_id, user_id and optional role.
    Raises TokenError on any failure.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise TokenError(f"Invalid token: {e}") from e
    if "user_id" not in payload or "box_id" not in payload:
        raise TokenError("Token missing required claims")
    return payload
