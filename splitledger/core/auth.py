"""
Identity token verification

Users sign in with an external identity provider that issues signed JWTs.
This service only verifies the token and trusts the user id it carries.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from splitledger.core.config import settings
from splitledger.core.logging import get_logger

logger = get_logger(__name__)


class TokenPayload(BaseModel):
    """Verified identity"""
    user_id: str
    name: Optional[str] = None


def create_access_token(user_id: str, name: str | None = None, expires_minutes: int = 60) -> str:
    """Issue a token the way the identity provider does (local tooling and tests)"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not set; cannot sign tokens")
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": user_id, "exp": int(expire.timestamp())}
    if name:
        payload["name"] = name
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify a bearer token; None if invalid, expired or missing the user id"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty; tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options={"verify_aud": bool(settings.JWT_AUDIENCE)},
        )
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None

    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id or len(str(user_id)) > 64:
        logger.warning("JWT payload has no usable user id")
        return None
    return TokenPayload(user_id=str(user_id), name=payload.get("name"))
