"""
Card rail over a Stripe-compatible REST API (form-encoded, Bearer API key).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx

from splitledger.core.circuit_breaker import CircuitBreaker
from splitledger.core.config import settings
from splitledger.core.exceptions import CircuitBreakerOpenError, ExternalServiceException
from splitledger.core.logging import get_logger
from splitledger.domain.services.rails.base_rail import BaseCardRail, CardSetup, RailResult, RailStatus
from splitledger.domain.services.rails.http_client import RailHttpClient

logger = get_logger(__name__)

_STATUS_MAP = {
    "succeeded": RailStatus.SUCCEEDED,
    "processing": RailStatus.PENDING,
    "requires_capture": RailStatus.PENDING,
    # off-session charges cannot complete 3DS, so these are final
    "requires_action": RailStatus.FAILED,
    "requires_payment_method": RailStatus.FAILED,
    "requires_confirmation": RailStatus.FAILED,
    "canceled": RailStatus.FAILED,
}


def map_intent_status(raw: Optional[str]) -> RailStatus:
    return _STATUS_MAP.get((raw or "").strip().lower(), RailStatus.PENDING)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class StripeCardProvider(BaseCardRail):

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 1.0,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._http = RailHttpClient(
            "card",
            settings.CARD_API_URL,
            transport=transport,
            backoff_base=backoff_base,
        )
        self._api_key = settings.CARD_API_KEY

    async def _send(
        self,
        path: str,
        operation: str,
        data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        method: str = "POST",
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return await self._circuit_breaker.execute(
            self._http.request, method, path, operation, headers=headers, data=data
        )

    async def create_customer(self, user_id: str) -> str:
        response = await self._send("/v1/customers", "create_customer", {"metadata[user_id]": user_id})
        if response.status_code != 200:
            raise ExternalServiceException.from_response("card", "create_customer", response)
        return response.json()["id"]

    async def create_setup_intent(self, customer_id: str) -> CardSetup:
        response = await self._send(
            "/v1/setup_intents",
            "create_setup_intent",
            {
                "customer": customer_id,
                "payment_method_types[]": "card",
                "usage": "off_session",
            },
        )
        if response.status_code != 200:
            raise ExternalServiceException.from_response("card", "create_setup_intent", response)
        body = response.json()
        return CardSetup(setup_intent_id=body["id"], client_secret=body.get("client_secret"))

    async def charge_card(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> RailResult:
        data = {
            "amount": str(to_minor_units(amount)),
            "currency": settings.CURRENCY.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": "true",
            "confirm": "true",
        }
        try:
            response = await self._send("/v1/payment_intents", "charge_card", data, idempotency_key)
        except CircuitBreakerOpenError:
            raise
        except ExternalServiceException as exc:
            logger.warning(
                "Card charge outcome unknown",
                extra_data={"customer_id": customer_id, "error": exc.message},
            )
            return RailResult(status=RailStatus.PENDING)

        body = response.json() if response.content else {}
        if response.status_code == 200:
            raw = body.get("status")
            return RailResult(status=map_intent_status(raw), id=body.get("id"), raw_status=raw)

        # 402 card_error: declined, the intent id rides inside the error object
        error = body.get("error") or {}
        intent = error.get("payment_intent") or {}
        logger.warning(
            "Card charge declined",
            extra_data={
                "customer_id": customer_id,
                "status_code": response.status_code,
                "decline_code": error.get("decline_code"),
            },
        )
        return RailResult(
            status=RailStatus.FAILED,
            id=intent.get("id"),
            raw_status=error.get("decline_code") or error.get("code") or str(response.status_code),
        )

    async def get_charge(self, payment_id: str) -> RailResult:
        try:
            response = await self._send(f"/v1/payment_intents/{payment_id}", "get_charge", method="GET")
        except CircuitBreakerOpenError:
            raise
        except ExternalServiceException as exc:
            logger.warning(
                "Card charge status check failed",
                extra_data={"payment_id": payment_id, "error": exc.message},
            )
            return RailResult(status=RailStatus.PENDING, id=payment_id)

        if response.status_code == 404:
            return RailResult(status=RailStatus.FAILED, id=payment_id, raw_status="not_found")
        if response.status_code != 200:
            raise ExternalServiceException.from_response("card", "get_charge", response)
        raw = response.json().get("status")
        return RailResult(status=map_intent_status(raw), id=payment_id, raw_status=raw)
