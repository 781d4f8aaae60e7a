"""
FastAPI dependency for authenticating API requests

Usage:
    @router.get("/splits")
    async def list_splits(
        user: TokenPayload = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        user_id = user.user_id
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from splitledger.core.auth import TokenPayload, verify_token
from splitledger.core.exceptions import UnauthorizedError
from splitledger.core.logging import get_logger, set_actor_id

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenPayload:
    """
    Verify the bearer token and bind the user id to the log context.

    Raises UnauthorizedError (401) when the header is missing or the token
    does not verify.
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing bearer token")

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise UnauthorizedError()

    set_actor_id(token_data.user_id)
    return token_data


async def get_current_user_id(user: TokenPayload = Depends(get_current_user)) -> str:
    return user.user_id
