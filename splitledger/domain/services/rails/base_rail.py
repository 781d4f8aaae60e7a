"""
Rail interfaces - Dependency Inversion for external payment providers.

Settlement logic depends only on these interfaces. Every implementation maps
its vendor status vocabulary onto RailStatus at the boundary, so nothing above
this layer ever sees "AcceptedSettlementCompleted" or "requires_action".
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class RailStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class RailResult:
    """Outcome of a single external payment"""
    status: RailStatus
    id: Optional[str] = None
    raw_status: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RailStatus.SUCCEEDED


@dataclass(frozen=True)
class BankConsent:
    consent_id: str
    redirect_uri: str


@dataclass(frozen=True)
class ConsentInfo:
    consent_id: str
    status: str  # active | revoked | expired
    expires_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class CardSetup:
    setup_intent_id: str
    client_secret: Optional[str]


class BaseBankDebitRail(ABC):
    """
    Bank direct debit against an enduring consent.

    Each implementation owns:
    - authentication with the provider
    - HTTP retry + circuit breaker
    - mapping provider statuses to RailStatus
    """

    name = "bank_debit"

    @abstractmethod
    async def create_consent(self, redirect_uri: str, max_amount: Decimal) -> BankConsent:
        """
        Start an enduring consent. The user authorises it at ``redirect_uri``.

        Raises:
            ExternalServiceException: provider unreachable or rejected the request
        """

    @abstractmethod
    async def get_consent(self, consent_id: str) -> ConsentInfo:
        """Current consent state, normalized to active / revoked / expired"""

    @abstractmethod
    async def create_payment(
        self,
        consent_id: str,
        amount: Decimal,
        particulars: str,
        reference: str,
        idempotency_key: str,
    ) -> RailResult:
        """
        Request a debit under the consent.

        Returns FAILED on an explicit rejection and PENDING when the outcome
        is unknown (timeouts, exhausted retries). Never raises for those.

        Raises:
            CircuitBreakerOpenError: the request was not attempted
        """

    @abstractmethod
    async def await_successful_payment(self, payment_id: str, max_wait_seconds: float) -> RailResult:
        """Poll until the payment settles, fails, or ``max_wait_seconds`` elapse (PENDING)"""

    @abstractmethod
    async def revoke_consent(self, consent_id: str) -> None:
        """Revoke the consent at the provider"""


class BaseCardRail(ABC):
    """Saved-card charges"""

    name = "card"

    @abstractmethod
    async def create_customer(self, user_id: str) -> str:
        """Create a provider customer and return its id"""

    @abstractmethod
    async def create_setup_intent(self, customer_id: str) -> CardSetup:
        """Begin saving a card for off-session use"""

    @abstractmethod
    async def charge_card(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> RailResult:
        """
        Charge a saved card off-session.

        Same contract as BaseBankDebitRail.create_payment: explicit declines
        are FAILED, unknown outcomes are PENDING.
        """

    @abstractmethod
    async def get_charge(self, payment_id: str) -> RailResult:
        """Current state of an earlier charge; unreachable provider is PENDING"""
