"""JWT access tokens shared with the main tenant application.

The tenant app signs tokens with the same secret; this service only needs
to verify them. :func:`create_access_token` exists for the seed script and
tests.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings


def create_access_token(
    user_id: uuid.UUID | str,
    tenant_id: uuid.UUID | str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a short-lived access token.

    Args:
        user_id: Subject of the token.
        tenant_id: Optional tenant claim, informational only; the tenant is
            always re-read from the user row.
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_access_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode = {"sub": str(user_id), "exp": expire, "iat": now, "type": "access"}
    if tenant_id is not None:
        to_encode["tenant_id"] = str(tenant_id)
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
