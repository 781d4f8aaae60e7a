"""
Ledger Service - atomic wallet mutation primitives

Every primitive locks the wallet row (SELECT ... FOR UPDATE), validates on
exact Decimals, updates the balance and writes exactly one Transaction row.
Primitives flush but never commit: the caller owns the unit of work and rolls
back on any exception. ``commit=True`` is a convenience for stand-alone use.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.exceptions import InsufficientBalanceError, WalletNotFoundError
from splitledger.core.logging import get_logger
from splitledger.core.validation import AmountValidator, ZERO
from splitledger.db.database import utcnow
from splitledger.db.models.transaction import Transaction, TransactionDirection, TransactionType
from splitledger.db.models.wallet import Wallet

logger = get_logger(__name__)


@dataclass
class LedgerResult:
    new_balance: Decimal
    transaction_id: int


def mask_bank_account(bank_account: str | None) -> str:
    """'12-3456-7890123-00' -> '****2300'"""
    digits = (bank_account or "").replace("-", "").replace(" ", "")
    if len(digits) > 4:
        return f"****{digits[-4:]}"
    return "Bank account"


_DIRECTIONS = {
    TransactionType.DEPOSIT: TransactionDirection.IN,
    TransactionType.SPLIT_RECEIVED: TransactionDirection.IN,
    TransactionType.WITHDRAWAL: TransactionDirection.OUT,
    TransactionType.SPLIT_PAYMENT: TransactionDirection.OUT,
}


class LedgerService:
    """Wallet balances and the append-only transaction log"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Wallet rows ====================

    async def get_wallet(self, user_id: str, for_update: bool = False) -> Optional[Wallet]:
        query = select(Wallet).where(Wallet.user_id == user_id)
        if for_update:
            # populate_existing: a row already in the identity map must be re-read under the lock
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def ensure_wallet(self, user_id: str) -> Wallet:
        """Return the user's wallet, creating an empty one if missing"""
        wallet = await self.get_wallet(user_id)
        if wallet:
            return wallet

        try:
            async with self.db.begin_nested():
                wallet = Wallet(user_id=user_id, balance=Decimal("0.00"), bank_connected=False)
                self.db.add(wallet)
        except IntegrityError:
            # Concurrent insert won the unique(user_id) race
            wallet = await self.get_wallet(user_id)
            if wallet is None:
                raise
            return wallet

        logger.info("Wallet created", extra_data={"user_id": user_id})
        return wallet

    async def _lock_wallet(self, user_id: str) -> Wallet:
        wallet = await self.get_wallet(user_id, for_update=True)
        if wallet is None:
            raise WalletNotFoundError(user_id)
        return wallet

    async def lock_wallets(self, *user_ids: str) -> dict[str, Wallet]:
        """Lock several wallets in ascending user_id order (deadlock-free)"""
        locked = {}
        for user_id in sorted(set(user_ids)):
            locked[user_id] = await self._lock_wallet(user_id)
        return locked

    async def get_balance(self, user_id: str) -> Decimal:
        wallet = await self.get_wallet(user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)
        return Decimal(wallet.balance)

    # ==================== Mutation primitives ====================

    async def _append(
        self,
        wallet: Wallet,
        tx_type: TransactionType,
        signed_amount: Decimal,
        description: str,
        split_event_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        new_balance = Decimal(wallet.balance) + signed_amount
        if new_balance < ZERO:
            raise InsufficientBalanceError(wallet.user_id, Decimal(wallet.balance), -signed_amount)

        wallet.balance = new_balance
        wallet.updated_at = utcnow()

        entry = Transaction(
            user_id=wallet.user_id,
            type=tx_type,
            direction=_DIRECTIONS[tx_type],
            amount=signed_amount,
            balance_after=new_balance,
            description=description,
            split_event_id=split_event_id,
            meta=metadata,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Ledger entry written",
            extra_data={
                "user_id": wallet.user_id,
                "type": tx_type.value,
                "amount": signed_amount,
                "balance_after": new_balance,
                "split_event_id": split_event_id,
            }
        )
        return entry

    async def _finish(self, entry: Transaction, commit: bool) -> LedgerResult:
        if commit:
            await self.db.commit()
        return LedgerResult(new_balance=Decimal(entry.balance_after), transaction_id=entry.id)

    async def deposit(
        self,
        user_id: str,
        amount,
        description: str = "Deposit",
        metadata: dict[str, Any] | None = None,
        commit: bool = False,
    ) -> LedgerResult:
        """
        Credit a wallet from outside the ledger (bank top-up, admin credit).

        Raises:
            ValidationException: amount not positive, too many decimals, too large
            WalletNotFoundError: no wallet row for the user
        """
        value = AmountValidator.require(amount)
        wallet = await self._lock_wallet(user_id)
        entry = await self._append(wallet, TransactionType.DEPOSIT, value, description, metadata=metadata)
        return await self._finish(entry, commit)

    async def withdraw(
        self,
        user_id: str,
        amount,
        withdrawal_type: str,
        fee_amount,
        net_amount,
        estimated_arrival: datetime,
        bank_account: str | None = None,
        commit: bool = False,
    ) -> LedgerResult:
        """
        Debit a withdrawal. The fee is included in ``amount``.

        Raises:
            WalletNotFoundError: no wallet row
            InsufficientBalanceError: balance < amount
        """
        value = AmountValidator.require(amount)
        fee = AmountValidator.require(fee_amount, field="fee_amount", min_value=ZERO)
        net = AmountValidator.require(net_amount, field="net_amount", min_value=ZERO)

        wallet = await self._lock_wallet(user_id)
        if Decimal(wallet.balance) < value:
            raise InsufficientBalanceError(user_id, Decimal(wallet.balance), value)

        masked = mask_bank_account(bank_account)
        if withdrawal_type == "fast":
            description = f"Fast withdrawal to {masked} (Fee: ${fee}, You receive: ${net})"
        else:
            description = f"Standard withdrawal to {masked} (You receive: ${net})"

        metadata = {
            "withdrawal_type": withdrawal_type,
            "fee_amount": str(fee),
            "net_amount": str(net),
            "estimated_arrival": estimated_arrival.isoformat(),
            "bank_account_masked": masked,
            "status": "processing",
        }
        entry = await self._append(wallet, TransactionType.WITHDRAWAL, -value, description, metadata=metadata)
        return await self._finish(entry, commit)

    async def credit_recipient(
        self,
        user_id: str,
        amount,
        description: str | None,
        split_event_id: str | None,
        metadata: dict[str, Any] | None = None,
        commit: bool = False,
    ) -> LedgerResult:
        """Credit the split creator, creating their wallet if it does not exist yet"""
        value = AmountValidator.require(amount)
        await self.ensure_wallet(user_id)
        wallet = await self._lock_wallet(user_id)
        entry = await self._append(
            wallet,
            TransactionType.SPLIT_RECEIVED,
            value,
            description or "Received split payment",
            split_event_id=split_event_id,
            metadata=metadata,
        )
        return await self._finish(entry, commit)

    async def debit_for_split(
        self,
        user_id: str,
        amount,
        description: str,
        split_event_id: str,
        metadata: dict[str, Any] | None = None,
        commit: bool = False,
    ) -> LedgerResult:
        """
        Payer side of a split payment. ``amount`` is the wallet portion only
        and may be zero when an external rail covered the whole share.

        Raises:
            InsufficientBalanceError: balance < amount
        """
        value = AmountValidator.require(amount, min_value=ZERO)
        wallet = await self._lock_wallet(user_id)
        if Decimal(wallet.balance) < value:
            raise InsufficientBalanceError(user_id, Decimal(wallet.balance), value)

        entry = await self._append(
            wallet,
            TransactionType.SPLIT_PAYMENT,
            -value if value > ZERO else ZERO,
            description,
            split_event_id=split_event_id,
            metadata=metadata,
        )
        return await self._finish(entry, commit)

    # ==================== Reads ====================

    async def get_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_split_transactions(self, split_event_id: str) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.split_event_id == split_event_id)
            .order_by(Transaction.id)
        )
        return list(result.scalars().all())
