"""JWT session tokens shared with the identity service.

The identity service issues the tokens; this service only needs to decode
them. ``create_access_token`` mints compatible tokens for tooling and tests.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Mint an access token whose ``sub`` is the user's UUID string."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    claims = {"sub": user_id, "exp": expire, "iat": now, "type": "access"}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a session token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
