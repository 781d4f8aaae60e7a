"""
Ledger primitives: balances, one transaction row per mutation, no negatives.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from splitledger.core.exceptions import InsufficientBalanceError, ValidationException, WalletNotFoundError
from splitledger.db.models.transaction import TransactionDirection, TransactionType
from splitledger.domain.services.ledger_service import LedgerService, mask_bank_account

pytestmark = pytest.mark.unit


async def test_ensure_wallet_is_idempotent(db_session):
    ledger = LedgerService(db_session)
    first = await ledger.ensure_wallet("alice")
    await db_session.commit()
    second = await ledger.ensure_wallet("alice")

    assert first.id == second.id
    assert Decimal(second.balance) == Decimal("0.00")


async def test_deposit_credits_and_writes_one_row(db_session, wallet_factory):
    await wallet_factory("alice")
    ledger = LedgerService(db_session)

    result = await ledger.deposit("alice", Decimal("25.50"), description="Top up", commit=True)

    assert result.new_balance == Decimal("25.50")
    rows = await ledger.get_transactions("alice")
    assert len(rows) == 1
    assert rows[0].type == TransactionType.DEPOSIT
    assert rows[0].direction == TransactionDirection.IN
    assert Decimal(rows[0].amount) == Decimal("25.50")
    assert Decimal(rows[0].balance_after) == Decimal("25.50")


async def test_deposit_missing_wallet(db_session):
    with pytest.raises(WalletNotFoundError):
        await LedgerService(db_session).deposit("nobody", Decimal("5.00"))


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00"), Decimal("1.005"), Decimal("1000000.00")])
async def test_deposit_rejects_bad_amounts(db_session, wallet_factory, amount):
    await wallet_factory("alice")
    with pytest.raises(ValidationException):
        await LedgerService(db_session).deposit("alice", amount)


async def test_withdraw_fast_description_and_metadata(db_session, wallet_factory):
    await wallet_factory("alice", balance="100.00")
    ledger = LedgerService(db_session)

    result = await ledger.withdraw(
        "alice",
        Decimal("50.00"),
        withdrawal_type="fast",
        fee_amount=Decimal("1.00"),
        net_amount=Decimal("49.00"),
        estimated_arrival=datetime(2026, 1, 5, 12, 0),
        bank_account="12-3456-7890123-00",
        commit=True,
    )

    assert result.new_balance == Decimal("50.00")
    row = (await ledger.get_transactions("alice"))[0]
    assert row.type == TransactionType.WITHDRAWAL
    assert row.direction == TransactionDirection.OUT
    assert Decimal(row.amount) == Decimal("-50.00")
    assert row.description == "Fast withdrawal to ****2300 (Fee: $1.00, You receive: $49.00)"
    assert row.meta["status"] == "processing"
    assert row.meta["withdrawal_type"] == "fast"


async def test_withdraw_more_than_balance_changes_nothing(db_session, wallet_factory):
    await wallet_factory("alice", balance="10.00")
    ledger = LedgerService(db_session)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.withdraw(
            "alice",
            Decimal("10.01"),
            withdrawal_type="normal",
            fee_amount=Decimal("0.00"),
            net_amount=Decimal("10.01"),
            estimated_arrival=datetime(2026, 1, 5),
        )
    await db_session.rollback()

    assert exc_info.value.details["action"] == "top_up"
    assert await ledger.get_balance("alice") == Decimal("10.00")
    assert await ledger.get_transactions("alice") == []


async def test_credit_recipient_creates_wallet(db_session):
    ledger = LedgerService(db_session)

    result = await ledger.credit_recipient("carol", Decimal("30.00"), None, split_event_id=None, commit=True)

    assert result.new_balance == Decimal("30.00")
    row = (await ledger.get_transactions("carol"))[0]
    assert row.type == TransactionType.SPLIT_RECEIVED
    assert row.description == "Received split payment"


async def test_debit_for_split_allows_zero_wallet_portion(db_session, wallet_factory):
    await wallet_factory("bob", balance="5.00")
    ledger = LedgerService(db_session)

    result = await ledger.debit_for_split(
        "bob",
        Decimal("0.00"),
        description="Paid for Dinner",
        split_event_id=None,
        metadata={"rail": "card", "external_amount": "30.00"},
        commit=True,
    )

    assert result.new_balance == Decimal("5.00")
    row = (await ledger.get_transactions("bob"))[0]
    assert Decimal(row.amount) == Decimal("0.00")
    assert row.direction == TransactionDirection.OUT
    assert row.meta["rail"] == "card"


async def test_lock_wallets_returns_each_wallet(db_session, wallet_factory):
    await wallet_factory("zed")
    await wallet_factory("amy")

    locked = await LedgerService(db_session).lock_wallets("zed", "amy", "zed")

    assert list(locked) == ["amy", "zed"]


async def test_lock_wallets_missing_wallet(db_session, wallet_factory):
    await wallet_factory("amy")
    with pytest.raises(WalletNotFoundError):
        await LedgerService(db_session).lock_wallets("amy", "ghost")


def test_mask_bank_account():
    assert mask_bank_account("12-3456-7890123-00") == "****2300"
    assert mask_bank_account(None) == "Bank account"
    assert mask_bank_account("12") == "Bank account"
