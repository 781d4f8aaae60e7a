"""
Health checks - liveness is trivial, readiness probes every dependency.

Error strings are fixed so the probe never leaks connection details.
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from splitledger.core.circuit_breaker import (
    CircuitState,
    get_bank_debit_circuit_breaker,
    get_card_circuit_breaker,
    get_push_circuit_breaker,
)
from splitledger.core.config import settings
from splitledger.core.logging import get_logger
from splitledger.core.redis_client import get_redis
from splitledger.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"

_BREAKERS = (get_bank_debit_circuit_breaker, get_card_circuit_breaker, get_push_circuit_breaker)


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """The settlement lock lives here, so payments stop without it"""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _breaker_states() -> dict[str, str]:
    """Open breakers are reported but do not make the service degraded"""
    states = {}
    for getter in _BREAKERS:
        breaker = getter()
        states[breaker.service_name] = breaker.state.value if breaker.state != CircuitState.CLOSED else _CHECK_OK
    return states


async def check_readiness() -> dict[str, Any]:
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED,
        **checks,
        "circuit_breakers": _breaker_states(),
    }
