"""
Settlement Service - money movement orchestration

Paying a split share, withdrawals, bank top-ups and admin credits, plus the
bank-consent and saved-card lifecycles that feed the payment rails.

pay_share order of operations:
1. validate (participant, status accepted, amount set)
2. take the payer's in-flight settlement lock (Redis SET NX EX)
3. resume an in-flight external payment, or select a rail; an external
   charge is marked on the participant (short commit) before it is sent
4. external rails must confirm before anything local changes
5. under the split lock, one DB unit: lock event, re-check, ledger writes, paid, clear marker,
   notify, commit
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.config import settings
from splitledger.core.exceptions import (
    BankNotConnectedError,
    CircuitBreakerOpenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    PaymentFailedError,
    PaymentPendingError,
    ValidationException,
    WalletNotFoundError,
)
from splitledger.core.logging import get_logger, log_async_operation
from splitledger.core.redis_client import settlement_lock, split_lock
from splitledger.core.validation import AmountValidator, CENT, TextSanitizer, ZERO
from splitledger.db.database import utcnow
from splitledger.db.models.notification import NotificationType
from splitledger.db.models.split_event import ParticipantStatus
from splitledger.db.models.wallet import Wallet
from splitledger.domain.services import abuse_policy
from splitledger.domain.services.ledger_service import LedgerService
from splitledger.domain.services.notification_service import NotificationService
from splitledger.domain.services.payment_rail_service import (
    RAIL_BANK_DEBIT,
    RAIL_WALLET,
    PaymentRailService,
    RailOutcome,
)
from splitledger.domain.services.rails import BankConsent, CardSetup, RailStatus
from splitledger.domain.services.split_service import SplitService
from splitledger.state_machine.manager import ParticipantStateMachine

logger = get_logger(__name__)

WITHDRAWAL_TYPES = ("fast", "normal")


@dataclass
class PaymentReceipt:
    split_event_id: str
    amount: Decimal
    rail: str
    wallet_amount: Decimal
    external_amount: Decimal
    external_fee: Decimal
    external_payment_id: Optional[str]
    new_balance: Decimal
    split_completed: bool


@dataclass
class WithdrawalReceipt:
    amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    withdrawal_type: str
    estimated_arrival: datetime
    new_balance: Decimal
    transaction_id: int


@dataclass
class DepositReceipt:
    amount: Decimal
    new_balance: Decimal
    transaction_id: int
    external_payment_id: Optional[str] = None


def add_business_days(start: datetime, days: int) -> datetime:
    """Skip Saturdays and Sundays"""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def withdrawal_fee(amount: Decimal, withdrawal_type: str) -> Decimal:
    if withdrawal_type != "fast":
        return ZERO
    rate = Decimal(str(settings.FAST_WITHDRAWAL_FEE_RATE))
    return (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def estimated_arrival(now: datetime, withdrawal_type: str) -> datetime:
    if withdrawal_type == "fast":
        return now + timedelta(hours=settings.FAST_WITHDRAWAL_ARRIVAL_HOURS)
    return add_business_days(now, settings.NORMAL_WITHDRAWAL_BUSINESS_DAYS)


class SettlementService:

    def __init__(
        self,
        db: AsyncSession,
        rails: PaymentRailService | None = None,
    ):
        self.db = db
        self.ledger = LedgerService(db)
        self.splits = SplitService(db)
        self.notifications = NotificationService(db)
        self.rails = rails or PaymentRailService()

    async def _require_wallet(self, user_id: str) -> Wallet:
        wallet = await self.ledger.get_wallet(user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)
        return wallet

    # ==================== Split payments ====================

    @staticmethod
    def _require_payable(participant) -> Decimal:
        status = ParticipantStatus(participant.status)
        if participant.is_creator:
            raise InvalidTransitionError(status.value, ParticipantStatus.PAID.value, "The creator does not pay their own split")
        if status != ParticipantStatus.ACCEPTED:
            message = "This share has already been paid" if status == ParticipantStatus.PAID else None
            raise InvalidTransitionError(status.value, ParticipantStatus.PAID.value, message)
        amount = Decimal(participant.amount)
        if amount <= ZERO:
            raise ValidationException("Set your amount for this split before paying", field="amount")
        return amount

    @log_async_operation("pay_share")
    async def pay_share(self, user_id: str, event_id: str, user_name: str | None = None) -> PaymentReceipt:
        """
        Pay the caller's share of a split to its creator.

        A share with an external payment still in flight is only ever
        resumed on that rail; the wallet and the other rail are not tried
        until the payment explicitly fails.

        Raises:
            SplitNotFoundError: no such event, or caller not a participant
            InvalidTransitionError: creator, not accepted, or already paid
            ValidationException: specified split with no amount set
            SettlementInProgressError: another settlement for the payer is running
            InsufficientFundsError: short balance and no bank consent or card
            PaymentPendingError / PaymentFailedError: external rail outcome
        """
        event = await self.splits.get_event(event_id)
        self._require_payable(self.splits.require_participant(event, user_id))

        async with settlement_lock(user_id):
            snapshot = await self.ledger.ensure_wallet(user_id)
            await self.ledger.ensure_wallet(event.creator_id)
            # re-read under the lock; an earlier attempt may have left a payment in flight
            event = await self.splits.get_event(event_id)
            participant = self.splits.require_participant(event, user_id)
            amount = self._require_payable(participant)
            reserved = await self.splits.reserved_wallet_amount(user_id, exclude_event_id=event_id)
            # nothing stays open while a rail confirms
            await self.db.commit()

            if participant.is_settling:
                outcome = await self._resume_settlement(snapshot, participant, amount)
            else:
                outcome = await self._start_settlement(
                    snapshot, event_id, amount, participant.payment_attempts or 0, reserved
                )

            try:
                async with split_lock(event_id, user_id):
                    receipt = await self._record_payment(user_id, event_id, outcome, user_name)
            except Exception:
                await self.db.rollback()
                if outcome.external_amount > ZERO:
                    # the in-flight marker survives, so the next attempt records this payment
                    logger.critical(
                        "External payment captured but split settlement failed",
                        extra_data={
                            "user_id": user_id,
                            "split_event_id": event_id,
                            **outcome.as_metadata(),
                        },
                    )
                raise

        logger.info(
            "Split share paid",
            extra_data={"user_id": user_id, "split_event_id": event_id, **outcome.as_metadata()},
        )
        return receipt

    async def _start_settlement(
        self,
        wallet: Wallet,
        event_id: str,
        amount: Decimal,
        attempt: int,
        reserved: Decimal,
    ) -> RailOutcome:
        user_id = wallet.user_id

        async def mark_in_flight(rail: str, charge: Decimal, fee: Decimal, wallet_amount: Decimal) -> None:
            event = await self.splits.get_event(event_id, for_update=True)
            participant = self.splits.require_participant(event, user_id)
            if self._require_payable(participant) != amount:
                raise ValidationException("The amount for this split changed, please try again", field="amount")
            participant.settling_rail = rail
            participant.settling_payment_id = None
            participant.settling_charge = charge
            participant.settling_fee = fee
            participant.settling_wallet_amount = wallet_amount
            participant.settling_since = utcnow()
            await self.db.commit()

        try:
            outcome = await self.rails.collect(
                wallet,
                event_id,
                amount,
                available=Decimal(wallet.balance) - reserved,
                attempt=attempt,
                before_external=mark_in_flight,
            )
        except PaymentPendingError as exc:
            await self._note_payment_id(event_id, user_id, exc.payment_id)
            raise
        except (PaymentFailedError, CircuitBreakerOpenError):
            await self._release_settlement(event_id, user_id)
            raise

        if outcome.rail != RAIL_WALLET:
            await self._note_payment_id(event_id, user_id, outcome.external_payment_id)
        return outcome

    async def _resume_settlement(self, wallet: Wallet, participant, amount: Decimal) -> RailOutcome:
        event_id = participant.split_event_id
        rail = participant.settling_rail
        payment_id = participant.settling_payment_id
        charge = Decimal(participant.settling_charge)
        fee = Decimal(participant.settling_fee or ZERO)
        wallet_amount = Decimal(participant.settling_wallet_amount or ZERO)

        logger.info(
            "Resuming in-flight settlement",
            extra_data={"user_id": wallet.user_id, "split_event_id": event_id, "rail": rail, "payment_id": payment_id},
        )
        result = await self.rails.resume(
            wallet, event_id, rail, charge, payment_id, attempt=participant.payment_attempts or 0
        )
        payment_id = result.id or payment_id

        if result.status == RailStatus.PENDING:
            await self._note_payment_id(event_id, wallet.user_id, payment_id)
            raise PaymentPendingError(rail, payment_id)
        if not result.succeeded:
            await self._release_settlement(event_id, wallet.user_id)
            raise PaymentFailedError(rail, payment_id, result.raw_status)

        await self._note_payment_id(event_id, wallet.user_id, payment_id)
        return RailOutcome(
            rail=rail,
            owed_amount=amount,
            wallet_amount=wallet_amount,
            external_amount=charge,
            external_fee=fee,
            external_payment_id=payment_id,
        )

    async def _note_payment_id(self, event_id: str, user_id: str, payment_id: str | None) -> None:
        """Short commit so the payment id outlives this request"""
        event = await self.splits.get_event(event_id, for_update=True)
        participant = self.splits.require_participant(event, user_id)
        if payment_id and participant.is_settling:
            participant.settling_payment_id = payment_id
        await self.db.commit()

    async def _release_settlement(self, event_id: str, user_id: str) -> None:
        """Nothing moved; the next attempt starts over with fresh idempotency keys"""
        event = await self.splits.get_event(event_id, for_update=True)
        participant = self.splits.require_participant(event, user_id)
        if participant.is_settling:
            participant.clear_settling()
            participant.payment_attempts = (participant.payment_attempts or 0) + 1
        await self.db.commit()

    async def _record_payment(
        self,
        user_id: str,
        event_id: str,
        outcome: RailOutcome,
        user_name: str | None,
    ) -> PaymentReceipt:
        event = await self.splits.get_event(event_id, for_update=True)
        participant = self.splits.require_participant(event, user_id)
        amount = self._require_payable(participant)
        if amount != outcome.owed_amount:
            raise ValidationException("The amount for this split changed, please try again", field="amount")

        await self.ledger.lock_wallets(user_id, event.creator_id)

        metadata = outcome.as_metadata()
        debit = await self.ledger.debit_for_split(
            user_id,
            outcome.wallet_amount,
            description=f"Paid for {event.name}",
            split_event_id=event.id,
            metadata=metadata,
        )
        await self.ledger.credit_recipient(
            event.creator_id,
            amount,
            description=f"Received payment for {event.name}",
            split_event_id=event.id,
            metadata={"payer_id": user_id, "rail": outcome.rail},
        )

        ParticipantStateMachine.transition(participant, ParticipantStatus.PAID)
        participant.clear_settling()

        await self.notifications.notify(
            user_id=event.creator_id,
            type=NotificationType.SPLIT_PAID,
            title="Payment Received",
            message=f"{user_name or 'Someone'} paid ${amount} for {event.name}",
            split_event_id=event.id,
            metadata={"payer_id": user_id, "amount": str(amount)},
        )
        completed = await self.splits.check_completion(event)

        await self.db.commit()

        return PaymentReceipt(
            split_event_id=event.id,
            amount=amount,
            rail=outcome.rail,
            wallet_amount=outcome.wallet_amount,
            external_amount=outcome.external_amount,
            external_fee=outcome.external_fee,
            external_payment_id=outcome.external_payment_id,
            new_balance=debit.new_balance,
            split_completed=completed is not None,
        )

    # ==================== Withdrawals / deposits ====================

    @log_async_operation("withdraw")
    async def withdraw(self, user_id: str, amount, withdrawal_type: str = "normal") -> WithdrawalReceipt:
        """
        Withdraw to the connected bank account. The fast fee comes out of ``amount``.

        Raises:
            ValidationException: bad amount or withdrawal type
            WalletNotFoundError, BankNotConnectedError
            InsufficientBalanceError: spendable balance below amount
            RateLimitedError: daily cap or deposit hold
        """
        value = AmountValidator.require(amount)
        if withdrawal_type not in WITHDRAWAL_TYPES:
            raise ValidationException(
                f"Withdrawal type must be one of: {', '.join(WITHDRAWAL_TYPES)}",
                field="withdrawal_type",
            )

        async with settlement_lock(user_id):
            wallet = await self._require_wallet(user_id)
            if not wallet.bank_connected:
                raise BankNotConnectedError(user_id)

            # wallet money promised to an in-flight split payment cannot leave
            reserved = await self.splits.reserved_wallet_amount(user_id)
            balance = Decimal(wallet.balance) - reserved
            if balance < value:
                raise InsufficientBalanceError(user_id, balance, value)

            now = utcnow()
            await abuse_policy.check_withdrawal(self.db, user_id, balance, value, now)

            fee = withdrawal_fee(value, withdrawal_type)
            net = value - fee
            arrival = estimated_arrival(now, withdrawal_type)

            try:
                result = await self.ledger.withdraw(
                    user_id,
                    value,
                    withdrawal_type=withdrawal_type,
                    fee_amount=fee,
                    net_amount=net,
                    estimated_arrival=arrival,
                )
                await self.notifications.notify(
                    user_id=user_id,
                    type=NotificationType.WITHDRAWAL_INITIATED,
                    title="Withdrawal Initiated",
                    message=f"${net} is on its way to your bank. Estimated arrival: {arrival:%d %b %Y}",
                    metadata={
                        "amount": str(value),
                        "fee_amount": str(fee),
                        "net_amount": str(net),
                        "withdrawal_type": withdrawal_type,
                        "transaction_id": result.transaction_id,
                    },
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        return WithdrawalReceipt(
            amount=value,
            fee_amount=fee,
            net_amount=net,
            withdrawal_type=withdrawal_type,
            estimated_arrival=arrival,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
        )

    @log_async_operation("deposit_from_bank")
    async def deposit_from_bank(self, user_id: str, amount, idempotency_key: str | None = None) -> DepositReceipt:
        """
        Top up the wallet by debiting the connected bank.

        Raises:
            BankNotConnectedError: no active consent
            RateLimitedError: daily deposit cap
            PaymentPendingError / PaymentFailedError: bank outcome
        """
        value = AmountValidator.require(amount)

        async with settlement_lock(user_id):
            wallet = await self._require_wallet(user_id)
            if not wallet.has_active_consent():
                raise BankNotConnectedError(user_id)

            await abuse_policy.check_deposit(self.db, user_id, utcnow())
            await self.db.commit()

            result = await self.rails.charge_bank(
                wallet,
                value,
                particulars="Top Up",
                reference="WALLET",
                idempotency_key=idempotency_key or uuid.uuid4().hex,
            )
            if not result.succeeded:
                raise PaymentFailedError(RAIL_BANK_DEBIT, result.id, result.raw_status)

            try:
                entry = await self.ledger.deposit(
                    user_id,
                    value,
                    description="Bank deposit",
                    metadata={"rail": RAIL_BANK_DEBIT, "external_payment_id": result.id},
                )
                await self.notifications.notify(
                    user_id=user_id,
                    type=NotificationType.DEPOSIT_RECEIVED,
                    title="Deposit Received",
                    message=f"${value} was added to your wallet",
                    metadata={"amount": str(value), "transaction_id": entry.transaction_id},
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                logger.critical(
                    "Bank debit captured but wallet deposit failed",
                    extra_data={"user_id": user_id, "amount": value, "external_payment_id": result.id},
                )
                raise

        return DepositReceipt(
            amount=value,
            new_balance=entry.new_balance,
            transaction_id=entry.transaction_id,
            external_payment_id=result.id,
        )

    async def admin_credit(self, user_id: str, amount, description: str | None = None) -> DepositReceipt:
        """Credit a wallet with no rail behind it (support, promotions). Held like any deposit."""
        value = AmountValidator.require(amount)
        text = TextSanitizer.sanitize(description or "", max_length=255) or "Admin credit"

        await self.ledger.ensure_wallet(user_id)
        try:
            entry = await self.ledger.deposit(user_id, value, description=text, metadata={"source": "admin"})
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Admin credit applied", extra_data={"user_id": user_id, "amount": value})
        return DepositReceipt(amount=value, new_balance=entry.new_balance, transaction_id=entry.transaction_id)

    # ==================== Bank consent lifecycle ====================

    async def start_bank_connection(self, user_id: str, redirect_uri: str) -> BankConsent:
        if not redirect_uri:
            raise ValidationException("redirect_uri is required", field="redirect_uri")
        wallet = await self.ledger.ensure_wallet(user_id)
        consent = await self.rails.bank_rail.create_consent(
            redirect_uri, Decimal(settings.BANK_CONSENT_MAX_AMOUNT)
        )
        wallet.pending_consent_id = consent.consent_id
        await self.db.commit()
        return consent

    async def confirm_bank_connection(self, user_id: str, consent_id: str) -> Wallet:
        """
        Finish connecting once the user authorised the consent at their bank.

        Raises:
            ValidationException: unknown consent, or not authorised
        """
        wallet = await self._require_wallet(user_id)
        if not consent_id or wallet.pending_consent_id != consent_id:
            raise ValidationException("No pending bank connection matches this consent", field="consent_id")

        info = await self.rails.bank_rail.get_consent(consent_id)
        if not info.is_active:
            raise ValidationException(
                f"Bank consent is {info.status}, please reconnect your bank",
                field="consent_id",
            )

        wallet.bank_connected = True
        wallet.bank_consent_id = consent_id
        wallet.bank_consent_expires_at = info.expires_at
        wallet.pending_consent_id = None
        await self.db.commit()

        logger.info("Bank connected", extra_data={"user_id": user_id, "consent_id": consent_id})
        return wallet

    async def disconnect_bank(self, user_id: str) -> Wallet:
        wallet = await self._require_wallet(user_id)
        if wallet.bank_consent_id:
            await self.rails.bank_rail.revoke_consent(wallet.bank_consent_id)

        wallet.bank_connected = False
        wallet.bank_consent_id = None
        wallet.bank_consent_expires_at = None
        wallet.pending_consent_id = None
        await self.db.commit()

        logger.info("Bank disconnected", extra_data={"user_id": user_id})
        return wallet

    # ==================== Card lifecycle ====================

    async def start_card_setup(self, user_id: str) -> tuple[str, CardSetup]:
        """Returns (customer_id, setup intent) for the client to collect the card"""
        wallet = await self.ledger.ensure_wallet(user_id)
        if not wallet.card_customer_id:
            wallet.card_customer_id = await self.rails.card_rail.create_customer(user_id)
        await self.db.commit()
        setup = await self.rails.card_rail.create_setup_intent(wallet.card_customer_id)
        return wallet.card_customer_id, setup

    async def save_card(self, user_id: str, payment_method_id: str, last4: str | None = None) -> Wallet:
        wallet = await self._require_wallet(user_id)
        if not wallet.card_customer_id:
            raise ValidationException("Start card setup before saving a card", field="payment_method_id")
        if not payment_method_id:
            raise ValidationException("payment_method_id is required", field="payment_method_id")
        if last4 is not None and (len(last4) != 4 or not last4.isdigit()):
            raise ValidationException("last4 must be 4 digits", field="last4")

        wallet.card_payment_method_id = payment_method_id
        wallet.card_last4 = last4
        await self.db.commit()

        logger.info("Card saved", extra_data={"user_id": user_id, "last4": last4})
        return wallet

    async def remove_card(self, user_id: str) -> Wallet:
        wallet = await self._require_wallet(user_id)
        wallet.card_payment_method_id = None
        wallet.card_last4 = None
        await self.db.commit()
        return wallet
