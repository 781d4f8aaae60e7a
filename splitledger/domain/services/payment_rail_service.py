"""
Payment Rail Selector

Decides how a payer covers an owed amount: wallet first, then bank direct
debit against an active consent, then a saved card. External rails are
confirm-before-mutate: this service never touches the ledger, it only
returns a RailOutcome once money has definitely moved, or raises.
"""
import hashlib
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Optional

from splitledger.core.config import settings
from splitledger.core.exceptions import (
    CircuitBreakerOpenError,
    InsufficientFundsError,
    PaymentFailedError,
    PaymentPendingError,
)
from splitledger.core.logging import get_logger
from splitledger.core.validation import CENT, ZERO
from splitledger.db.models.wallet import Wallet
from splitledger.domain.services.rails import (
    BaseBankDebitRail,
    BaseCardRail,
    RailResult,
    RailStatus,
    get_bank_debit_rail,
    get_card_rail,
)

logger = get_logger(__name__)

RAIL_WALLET = "wallet"
RAIL_BANK_DEBIT = "bank_debit"
RAIL_CARD = "card"

# (rail, amount charged, fee, wallet contribution), awaited before an external charge
ExternalAttemptHook = Callable[[str, Decimal, Decimal, Decimal], Awaitable[None]]


@dataclass
class RailOutcome:
    """How an owed amount was covered"""
    rail: str
    owed_amount: Decimal
    wallet_amount: Decimal
    external_amount: Decimal = ZERO
    external_fee: Decimal = ZERO
    external_payment_id: Optional[str] = None

    def as_metadata(self) -> dict:
        return {
            "owed_amount": str(self.owed_amount),
            "wallet_amount": str(self.wallet_amount),
            "external_amount": str(self.external_amount),
            "external_fee": str(self.external_fee),
            "external_payment_id": self.external_payment_id,
            "rail": self.rail,
        }


def rail_fee(rail: str, amount: Decimal) -> Decimal:
    rate = {
        RAIL_BANK_DEBIT: settings.BANK_DEBIT_FEE_RATE,
        RAIL_CARD: settings.CARD_FEE_RATE,
    }.get(rail, 0.0)
    return (Decimal(amount) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)


def settlement_idempotency_key(split_event_id: str, payer_id: str, rail: str, attempt: int = 0) -> str:
    """
    Same payer, same event, same rail -> same key, so a retry cannot double-charge.
    ``attempt`` only moves after a rail explicitly failed the previous one.
    """
    raw = f"{rail}:{split_event_id}:{payer_id}"
    if attempt:
        raw = f"{raw}:{attempt}"
    return hashlib.sha256(raw.encode()).hexdigest()[:40]


class PaymentRailService:

    def __init__(
        self,
        bank_rail: BaseBankDebitRail | None = None,
        card_rail: BaseCardRail | None = None,
    ):
        self._bank_rail = bank_rail
        self._card_rail = card_rail

    @property
    def bank_rail(self) -> BaseBankDebitRail:
        if self._bank_rail is None:
            self._bank_rail = get_bank_debit_rail()
        return self._bank_rail

    @property
    def card_rail(self) -> BaseCardRail:
        if self._card_rail is None:
            self._card_rail = get_card_rail()
        return self._card_rail

    def _charge_amount(self, rail: str, shortfall: Decimal) -> tuple[Decimal, Decimal]:
        """Returns (amount charged on the rail, fee)"""
        fee = rail_fee(rail, shortfall)
        if settings.RAIL_FEE_POLICY == "pass_to_payer":
            return shortfall + fee, fee
        return shortfall, fee

    # ==================== Single-rail charges ====================

    async def charge_bank(
        self,
        wallet: Wallet,
        amount: Decimal,
        particulars: str,
        reference: str,
        idempotency_key: str,
    ) -> RailResult:
        """
        Debit ``amount`` under the wallet's consent and wait for settlement.

        Returns SUCCEEDED or FAILED; an unconfirmed payment raises.

        Raises:
            PaymentPendingError: not settled within RAIL_CONFIRM_TIMEOUT_SECONDS
            CircuitBreakerOpenError: bank rail unavailable, nothing attempted
        """
        result = await self.bank_rail.create_payment(
            consent_id=wallet.bank_consent_id,
            amount=amount,
            particulars=particulars,
            reference=reference,
            idempotency_key=idempotency_key,
        )
        if result.status == RailStatus.PENDING and result.id:
            result = await self.bank_rail.await_successful_payment(
                result.id, settings.RAIL_CONFIRM_TIMEOUT_SECONDS
            )

        if result.status == RailStatus.PENDING:
            logger.warning(
                "Bank debit not confirmed",
                extra_data={"user_id": wallet.user_id, "payment_id": result.id, "amount": amount},
            )
            raise PaymentPendingError(RAIL_BANK_DEBIT, result.id)
        return result

    async def charge_saved_card(self, wallet: Wallet, amount: Decimal, idempotency_key: str) -> RailResult:
        result = await self.card_rail.charge_card(
            customer_id=wallet.card_customer_id,
            payment_method_id=wallet.card_payment_method_id,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        if result.status == RailStatus.PENDING:
            logger.warning(
                "Card charge not confirmed",
                extra_data={"user_id": wallet.user_id, "payment_id": result.id, "amount": amount},
            )
            raise PaymentPendingError(RAIL_CARD, result.id)
        return result

    # ==================== Selection ====================

    async def collect(
        self,
        wallet: Wallet,
        split_event_id: str,
        amount_owed: Decimal,
        available: Decimal | None = None,
        attempt: int = 0,
        before_external: ExternalAttemptHook | None = None,
    ) -> RailOutcome:
        """
        Cover ``amount_owed`` for the payer owning ``wallet`` (a snapshot).

        A short wallet contributes what it can spend (``available``, default
        its whole balance) and an external rail covers the shortfall.
        ``before_external`` runs before each external charge is sent, so the
        caller can persist the attempt first.

        Raises:
            InsufficientFundsError: short balance and no usable rail
            PaymentPendingError: external outcome unknown, card fallback not attempted
            PaymentFailedError: every usable rail explicitly failed
            CircuitBreakerOpenError: the only usable rail is unavailable
        """
        owed = Decimal(amount_owed)
        balance = Decimal(wallet.balance) if available is None else max(Decimal(available), ZERO)
        if balance >= owed:
            return RailOutcome(rail=RAIL_WALLET, owed_amount=owed, wallet_amount=owed)

        shortfall = owed - balance
        can_bank = wallet.has_active_consent()
        can_card = wallet.has_card
        if not can_bank and not can_card:
            raise InsufficientFundsError(balance, owed)

        bank_failure: Optional[Exception] = None
        if can_bank:
            charge, fee = self._charge_amount(RAIL_BANK_DEBIT, shortfall)
            try:
                if before_external is not None:
                    await before_external(RAIL_BANK_DEBIT, charge, fee, balance)
                result = await self.charge_bank(
                    wallet,
                    charge,
                    particulars="Split Payment",
                    reference=split_event_id[:12],
                    idempotency_key=settlement_idempotency_key(
                        split_event_id, wallet.user_id, RAIL_BANK_DEBIT, attempt
                    ),
                )
            except CircuitBreakerOpenError as exc:
                if not can_card:
                    raise
                bank_failure = exc
            else:
                if result.succeeded:
                    return RailOutcome(
                        rail=RAIL_BANK_DEBIT,
                        owed_amount=owed,
                        wallet_amount=balance,
                        external_amount=charge,
                        external_fee=fee,
                        external_payment_id=result.id,
                    )
                bank_failure = PaymentFailedError(RAIL_BANK_DEBIT, result.id, result.raw_status)
                if not can_card:
                    raise bank_failure

            logger.warning(
                "Bank debit failed, falling back to card",
                extra_data={"user_id": wallet.user_id, "split_event_id": split_event_id, "error": str(bank_failure)},
            )

        charge, fee = self._charge_amount(RAIL_CARD, shortfall)
        if before_external is not None:
            await before_external(RAIL_CARD, charge, fee, balance)
        result = await self.charge_saved_card(
            wallet,
            charge,
            idempotency_key=settlement_idempotency_key(split_event_id, wallet.user_id, RAIL_CARD, attempt),
        )
        if not result.succeeded:
            raise PaymentFailedError(RAIL_CARD, result.id, result.raw_status)

        return RailOutcome(
            rail=RAIL_CARD,
            owed_amount=owed,
            wallet_amount=balance,
            external_amount=charge,
            external_fee=fee,
            external_payment_id=result.id,
        )

    async def resume(
        self,
        wallet: Wallet,
        split_event_id: str,
        rail: str,
        charge: Decimal,
        payment_id: str | None = None,
        attempt: int = 0,
    ) -> RailResult:
        """
        Re-check an external charge started by an earlier attempt, on the
        same rail. Never starts a second payment: with a payment id the rail
        is polled, without one the original request is replayed under its
        idempotency key.

        Returns the rail's latest view, PENDING included.
        """
        key = settlement_idempotency_key(split_event_id, wallet.user_id, rail, attempt)

        if rail == RAIL_BANK_DEBIT:
            if payment_id is None:
                result = await self.bank_rail.create_payment(
                    consent_id=wallet.bank_consent_id,
                    amount=charge,
                    particulars="Split Payment",
                    reference=split_event_id[:12],
                    idempotency_key=key,
                )
                if result.status != RailStatus.PENDING or not result.id:
                    return result
                payment_id = result.id
            return await self.bank_rail.await_successful_payment(
                payment_id, settings.RAIL_CONFIRM_TIMEOUT_SECONDS
            )

        if payment_id is None:
            return await self.card_rail.charge_card(
                customer_id=wallet.card_customer_id,
                payment_method_id=wallet.card_payment_method_id,
                amount=charge,
                idempotency_key=key,
            )
        return await self.card_rail.get_charge(payment_id)
