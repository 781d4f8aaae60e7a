"""
Shared HTTP transport for rail providers: retry with exponential backoff on
transient status codes, timeouts and network errors.

Non-transient responses (including 4xx) are returned to the caller, which
decides whether they mean "rejected". Only infrastructure failures raise, so
a declined card does not count against the circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from splitledger.core.config import settings
from splitledger.core.exceptions import ExternalServiceException, ServiceTimeoutError
from splitledger.core.logging import get_logger

logger = get_logger(__name__)


def parse_status_codes(raw: str) -> set[int]:
    return {int(code.strip()) for code in raw.split(",") if code.strip()}


class RailHttpClient:

    def __init__(
        self,
        service_name: str,
        base_url: str,
        *,
        max_retries: int | None = None,
        timeout: float = 30.0,
        backoff_base: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries or settings.RAIL_MAX_RETRIES)
        self._timeout = timeout
        self._backoff_base = backoff_base
        self._transport = transport
        self._transient_status_codes = parse_status_codes(settings.RAIL_TRANSIENT_STATUS_CODES)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send a request with retry.

        Raises:
            ServiceTimeoutError: every attempt timed out
            ExternalServiceException: network errors or transient statuses on every attempt
        """
        url = f"{self.base_url}{path}"

        async with self._client() as client:
            for attempt in range(self._max_retries):
                last_attempt = attempt >= self._max_retries - 1
                backoff = self._backoff_base * (2 ** attempt)
                try:
                    response = await client.request(method, url, headers=headers, json=json, data=data)

                    if response.status_code in self._transient_status_codes or response.status_code >= 500:
                        if not last_attempt:
                            logger.warning(
                                f"Transient {self.service_name} error on {operation}, retrying",
                                extra_data={
                                    "status_code": response.status_code,
                                    "attempt": attempt + 1,
                                    "max_retries": self._max_retries,
                                    "backoff_seconds": backoff,
                                },
                            )
                            await asyncio.sleep(backoff)
                            continue
                        raise ExternalServiceException.from_response(self.service_name, operation, response)

                    return response
                except httpx.TimeoutException:
                    if not last_attempt:
                        logger.warning(
                            f"{self.service_name} {operation} timeout, retrying",
                            extra_data={"attempt": attempt + 1, "backoff_seconds": backoff},
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise ServiceTimeoutError(self.service_name, self._timeout)
                except httpx.RequestError as exc:
                    if not last_attempt:
                        logger.warning(
                            f"{self.service_name} network error on {operation}, retrying",
                            extra_data={
                                "error": str(exc),
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise ExternalServiceException(
                        service_name=self.service_name,
                        message=f"{self.service_name} {operation} network error: {exc}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

        # range() is never empty, the loop always returns or raises
        raise ExternalServiceException(self.service_name, f"{self.service_name} {operation} failed")
