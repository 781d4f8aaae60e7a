"""
Bank direct-debit rail over a BlinkPay-compatible REST API.

- POST /oauth2/token                             client-credentials access token
- POST /payments/v1/enduring-consents            start a consent
- GET/DELETE /payments/v1/enduring-consents/{id}  read / revoke a consent
- POST /payments/v1/payments                     debit under a consent
- GET /payments/v1/payments/{id}                 payment status
"""
from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from splitledger.core.circuit_breaker import CircuitBreaker
from splitledger.core.config import settings
from splitledger.core.exceptions import CircuitBreakerOpenError, ExternalServiceException
from splitledger.core.logging import get_logger
from splitledger.domain.services.rails.base_rail import (
    BankConsent,
    BaseBankDebitRail,
    ConsentInfo,
    RailResult,
    RailStatus,
)
from splitledger.domain.services.rails.http_client import RailHttpClient

logger = get_logger(__name__)

_SUCCESS_STATUSES = {"acceptedsettlementcompleted", "completed"}
_FAILED_STATUSES = {"rejected", "failed", "cancelled", "acceptedsettlementfailed"}

CONSENT_VALIDITY = timedelta(days=365)


def map_payment_status(raw: Optional[str]) -> RailStatus:
    """Only an explicit settlement-completed status counts as success"""
    normalized = (raw or "").strip().lower()
    if normalized in _SUCCESS_STATUSES:
        return RailStatus.SUCCEEDED
    if normalized in _FAILED_STATUSES:
        return RailStatus.FAILED
    return RailStatus.PENDING


def map_consent_status(raw: Optional[str]) -> str:
    if raw == "Authorised":
        return "active"
    if raw == "Revoked":
        return "revoked"
    return "expired"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _money(amount: Decimal) -> dict[str, str]:
    return {"currency": settings.CURRENCY, "total": f"{Decimal(amount):.2f}"}


class BlinkDebitProvider(BaseBankDebitRail):
    """Enduring-consent direct debit"""

    poll_interval_seconds = 1.0

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 1.0,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._http = RailHttpClient(
            "bank_debit",
            settings.BANK_DEBIT_API_URL,
            transport=transport,
            backoff_base=backoff_base,
        )
        self._client_id = settings.BANK_DEBIT_CLIENT_ID
        self._client_secret = settings.BANK_DEBIT_CLIENT_SECRET
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ── auth ──

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            # refresh a minute early
            if self._access_token and time.monotonic() < self._token_expires_at - 60:
                return self._access_token

            response = await self._circuit_breaker.execute(
                self._http.request,
                "POST",
                "/oauth2/token",
                "token",
                json={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
            )
            if response.status_code != 200:
                raise ExternalServiceException.from_response("bank_debit", "token", response)

            body = response.json()
            self._access_token = body["access_token"]
            self._token_expires_at = time.monotonic() + int(body.get("expires_in", 3600))
            return self._access_token

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "request-id": str(uuid.uuid4()),
        }
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key

        return await self._circuit_breaker.execute(
            self._http.request, method, path, operation, headers=headers, json=json
        )

    # ── consents ──

    async def create_consent(self, redirect_uri: str, max_amount: Decimal) -> BankConsent:
        now = datetime.now(timezone.utc)
        payload = {
            "flow": {
                "detail": {
                    "type": "gateway",
                    "redirect_uri": redirect_uri,
                    "flow_hint": {"type": "redirect"},
                }
            },
            "period": "monthly",
            "from_timestamp": now.isoformat(),
            "expiry_timestamp": (now + CONSENT_VALIDITY).isoformat(),
            "maximum_amount_period": _money(max_amount),
            "maximum_amount_payment": _money(max_amount),
        }
        response = await self._send("POST", "/payments/v1/enduring-consents", "create_consent", json=payload)
        if response.status_code not in (200, 201):
            raise ExternalServiceException.from_response("bank_debit", "create_consent", response)

        body = response.json()
        logger.info("Bank consent created", extra_data={"consent_id": body.get("consent_id")})
        return BankConsent(consent_id=body["consent_id"], redirect_uri=body.get("redirect_uri", ""))

    async def get_consent(self, consent_id: str) -> ConsentInfo:
        response = await self._send("GET", f"/payments/v1/enduring-consents/{consent_id}", "get_consent")
        if response.status_code == 404:
            return ConsentInfo(consent_id=consent_id, status="expired")
        if response.status_code != 200:
            raise ExternalServiceException.from_response("bank_debit", "get_consent", response)

        body = response.json()
        detail = body.get("detail") or {}
        return ConsentInfo(
            consent_id=consent_id,
            status=map_consent_status(body.get("status")),
            expires_at=_parse_timestamp(detail.get("expiry_timestamp")),
        )

    async def revoke_consent(self, consent_id: str) -> None:
        response = await self._send("DELETE", f"/payments/v1/enduring-consents/{consent_id}", "revoke_consent")
        # already gone counts as revoked
        if response.status_code not in (200, 204, 404):
            raise ExternalServiceException.from_response("bank_debit", "revoke_consent", response)
        logger.info("Bank consent revoked", extra_data={"consent_id": consent_id})

    # ── payments ──

    async def create_payment(
        self,
        consent_id: str,
        amount: Decimal,
        particulars: str,
        reference: str,
        idempotency_key: str,
    ) -> RailResult:
        payload = {
            "consent_id": consent_id,
            "enduring_payment": {
                "amount": _money(amount),
                "pcr": {
                    "particulars": particulars[:12],
                    "code": "PAYMENT",
                    "reference": reference[:12],
                },
            },
        }
        try:
            response = await self._send(
                "POST",
                "/payments/v1/payments",
                "create_payment",
                json=payload,
                idempotency_key=idempotency_key,
            )
        except CircuitBreakerOpenError:
            raise
        except ExternalServiceException as exc:
            logger.warning(
                "Bank payment outcome unknown",
                extra_data={"consent_id": consent_id, "error": exc.message},
            )
            return RailResult(status=RailStatus.PENDING)

        if response.status_code not in (200, 201):
            logger.warning(
                "Bank payment rejected",
                extra_data={"consent_id": consent_id, "status_code": response.status_code},
            )
            return RailResult(status=RailStatus.FAILED, raw_status=str(response.status_code))

        body = response.json()
        raw = body.get("status")
        return RailResult(
            status=map_payment_status(raw) if raw else RailStatus.PENDING,
            id=body.get("payment_id"),
            raw_status=raw,
        )

    async def _get_payment(self, payment_id: str) -> RailResult:
        response = await self._send("GET", f"/payments/v1/payments/{payment_id}", "get_payment")
        if response.status_code == 404:
            return RailResult(status=RailStatus.FAILED, id=payment_id, raw_status="not_found")
        if response.status_code != 200:
            raise ExternalServiceException.from_response("bank_debit", "get_payment", response)

        raw = response.json().get("status")
        return RailResult(status=map_payment_status(raw), id=payment_id, raw_status=raw)

    async def await_successful_payment(self, payment_id: str, max_wait_seconds: float) -> RailResult:
        deadline = time.monotonic() + max_wait_seconds
        last = RailResult(status=RailStatus.PENDING, id=payment_id)

        while True:
            try:
                last = await self._get_payment(payment_id)
            except CircuitBreakerOpenError:
                return RailResult(status=RailStatus.PENDING, id=payment_id, raw_status=last.raw_status)
            except ExternalServiceException as exc:
                logger.warning(
                    "Bank payment status check failed",
                    extra_data={"payment_id": payment_id, "error": exc.message},
                )

            if last.status != RailStatus.PENDING:
                return last
            if time.monotonic() + self.poll_interval_seconds > deadline:
                logger.warning(
                    "Bank payment not settled in time",
                    extra_data={"payment_id": payment_id, "max_wait_seconds": max_wait_seconds},
                )
                return RailResult(status=RailStatus.PENDING, id=payment_id, raw_status=last.raw_status)
            await asyncio.sleep(self.poll_interval_seconds)
