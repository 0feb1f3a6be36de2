"""Bearer tokens identifying who records a ledger movement."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from .config import DEFAULT_SECRET_KEY, Settings, settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "ledger_access"


class SecretKeyError(Exception):
    """Raised when the signing key is left at its development default."""

    pass


def resolve_secret_key(config: Settings) -> str:
    """Return the token signing key from ``config``.

    The development default is only accepted with ``debug`` on and
    outside production.

    Raises:
        SecretKeyError: If the default key would be used otherwise
    """
    if config.jwt_secret_key != DEFAULT_SECRET_KEY:
        return config.jwt_secret_key
    if config.is_production or not config.debug:
        raise SecretKeyError(
            "JWT_SECRET_KEY must be set to a secure value. "
            'Generate one with: python -c "import secrets; print(secrets.token_urlsafe(32))"'
        )
    logger.warning("Signing ledger tokens with the development key; set JWT_SECRET_KEY outside development")
    return config.jwt_secret_key


SECRET_KEY = resolve_secret_key(settings)


class TokenData(BaseModel):
    """Identity of the user recording ledger events."""

    user_id: int
    email: str
    name: Optional[str] = None

    @property
    def recorder(self) -> str:
        """Name shown next to the movements this user records."""
        return self.name or self.email


def create_access_token(
    user_id: int,
    email: str,
    name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token.

    Args:
        user_id: The user's database ID, stored as ``created_by`` on writes
        email: The user's email
        name: Optional display name
        expires_delta: Lifetime; defaults to ``access_token_expire_minutes``

    Returns:
        Encoded JWT string
    """
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "email": email,
        "exp": datetime.now(timezone.utc) + lifetime,
        "type": TOKEN_TYPE,
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[TokenData]:
    """Return the token's identity, or None if it is invalid or expired."""
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = int(claims.get("sub", 0))
    except (JWTError, ValueError):
        return None
    if claims.get("type") != TOKEN_TYPE or user_id <= 0:
        return None
    return TokenData(user_id=user_id, email=claims.get("email", ""), name=claims.get("name"))
