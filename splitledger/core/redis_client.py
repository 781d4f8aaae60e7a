"""
Redis Client

Async singleton plus two short locks, each a key set with NX and an expiry so
a crashed worker can never leave anything locked for good: the per-payer
settlement lock (fails fast) and the per-split record lock (waits briefly).
"""
import asyncio
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import urlparse

import redis.asyncio as aioredis

from splitledger.core.config import settings
from splitledger.core.exceptions import SettlementInProgressError
from splitledger.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()

_SETTLEMENT_LOCK_PREFIX = "settlement_lock"
_SPLIT_LOCK_PREFIX = "split_lock"
_LOCK_POLL_SECONDS = 0.05

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Shared client (connection pool, decoded responses)"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Call on app shutdown"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def _acquire(redis: aioredis.Redis, key: str, token: str, ttl: int, wait_seconds: float = 0.0) -> bool:
    deadline = time.monotonic() + wait_seconds
    while not await redis.set(key, token, nx=True, ex=ttl):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(_LOCK_POLL_SECONDS)
    return True


@asynccontextmanager
async def settlement_lock(user_id: str, ttl_seconds: int | None = None) -> AsyncIterator[str]:
    """
    Hold the in-flight settlement lock for a payer.

    Raises:
        SettlementInProgressError: another settlement for this user holds it
    """
    redis = await get_redis()
    key = f"{_SETTLEMENT_LOCK_PREFIX}:{user_id}"
    token = secrets.token_hex(16)
    ttl = ttl_seconds or settings.SETTLEMENT_LOCK_TTL_SECONDS

    if not await _acquire(redis, key, token, ttl):
        logger.warning(
            "Settlement already in progress",
            extra_data={"user_id": user_id}
        )
        raise SettlementInProgressError(user_id)

    try:
        yield token
    finally:
        await redis.eval(_RELEASE_SCRIPT, 1, key, token)


@asynccontextmanager
async def split_lock(split_event_id: str, user_id: str) -> AsyncIterator[str]:
    """
    Serialize the ledger writes of payers settling the same split, so the
    completion check always sees every earlier payment. Waits up to
    SPLIT_LOCK_WAIT_SECONDS for the current holder.

    Raises:
        SettlementInProgressError: the split stayed locked past the wait
    """
    redis = await get_redis()
    key = f"{_SPLIT_LOCK_PREFIX}:{split_event_id}"
    token = secrets.token_hex(16)

    if not await _acquire(redis, key, token, settings.SETTLEMENT_LOCK_TTL_SECONDS, settings.SPLIT_LOCK_WAIT_SECONDS):
        logger.warning(
            "Split busy recording another payment",
            extra_data={"split_event_id": split_event_id, "user_id": user_id}
        )
        raise SettlementInProgressError(user_id, "Another payment for this split is being recorded, please retry")

    try:
        yield token
    finally:
        await redis.eval(_RELEASE_SCRIPT, 1, key, token)
