"""
Wallet API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.api.dependencies.auth import get_current_user_id
from splitledger.db.database import get_db, utcnow
from splitledger.db.models.transaction import TransactionDirection, TransactionType
from splitledger.db.models.wallet import Wallet
from splitledger.domain.services import abuse_policy
from splitledger.domain.services.ledger_service import LedgerService
from splitledger.domain.services.settlement_service import SettlementService

router = APIRouter()


class WalletResponse(BaseModel):
    user_id: str
    balance: Decimal
    withdrawable: Decimal
    held: Decimal
    bank_connected: bool
    bank_consent_expires_at: Optional[datetime] = None
    has_card: bool
    card_last4: Optional[str] = None


class TransactionResponse(BaseModel):
    id: int
    type: TransactionType
    direction: TransactionDirection
    amount: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    split_event_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="meta")
    created_at: datetime

    model_config = {"from_attributes": True}


class WithdrawRequest(BaseModel):
    amount: Decimal
    withdrawal_type: str = "normal"


class WithdrawalResponse(BaseModel):
    amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    withdrawal_type: str
    estimated_arrival: datetime
    new_balance: Decimal
    transaction_id: int

    model_config = {"from_attributes": True}


class DepositRequest(BaseModel):
    amount: Decimal


class DepositResponse(BaseModel):
    amount: Decimal
    new_balance: Decimal
    transaction_id: int
    external_payment_id: Optional[str] = None

    model_config = {"from_attributes": True}


class BankConnectRequest(BaseModel):
    redirect_uri: str


class BankConnectResponse(BaseModel):
    consent_id: str
    redirect_uri: str


class BankConfirmRequest(BaseModel):
    consent_id: str


class CardSetupResponse(BaseModel):
    customer_id: str
    setup_intent_id: str
    client_secret: Optional[str] = None


class SaveCardRequest(BaseModel):
    payment_method_id: str
    last4: Optional[str] = None


async def _wallet_view(db: AsyncSession, wallet: Wallet) -> WalletResponse:
    balance = Decimal(wallet.balance)
    withdrawable, held = await abuse_policy.get_withdrawable(db, wallet.user_id, balance, utcnow())
    return WalletResponse(
        user_id=wallet.user_id,
        balance=balance,
        withdrawable=withdrawable,
        held=held,
        bank_connected=bool(wallet.bank_connected),
        bank_consent_expires_at=wallet.bank_consent_expires_at,
        has_card=wallet.has_card,
        card_last4=wallet.card_last4,
    )


@router.get(
    "",
    response_model=WalletResponse,
    summary="Get my wallet",
    description="Returns the wallet, creating an empty one on first use. `withdrawable` excludes deposits still on hold.",
)
async def get_wallet(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    wallet = await LedgerService(db).ensure_wallet(user_id)
    await db.commit()
    return await _wallet_view(db, wallet)


@router.get("/transactions", response_model=List[TransactionResponse], summary="Transaction history")
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService(db).get_transactions(user_id, limit=limit, offset=offset)


@router.post("/withdraw", response_model=WithdrawalResponse, summary="Withdraw to bank")
async def withdraw(
    body: WithdrawRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await SettlementService(db).withdraw(user_id, body.amount, body.withdrawal_type)


@router.post("/deposit", response_model=DepositResponse, summary="Top up from bank")
async def deposit(
    body: DepositRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await SettlementService(db).deposit_from_bank(user_id, body.amount, idempotency_key=idempotency_key)


@router.post("/bank/connect", response_model=BankConnectResponse, summary="Start bank connection")
async def connect_bank(
    body: BankConnectRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    consent = await SettlementService(db).start_bank_connection(user_id, body.redirect_uri)
    return BankConnectResponse(consent_id=consent.consent_id, redirect_uri=consent.redirect_uri)


@router.post("/bank/confirm", response_model=WalletResponse, summary="Finish bank connection")
async def confirm_bank(
    body: BankConfirmRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    wallet = await SettlementService(db).confirm_bank_connection(user_id, body.consent_id)
    return await _wallet_view(db, wallet)


@router.delete("/bank", response_model=WalletResponse, summary="Disconnect bank")
async def disconnect_bank(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    wallet = await SettlementService(db).disconnect_bank(user_id)
    return await _wallet_view(db, wallet)


@router.post("/card/setup", response_model=CardSetupResponse, summary="Start saving a card")
async def start_card_setup(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    customer_id, setup = await SettlementService(db).start_card_setup(user_id)
    return CardSetupResponse(
        customer_id=customer_id,
        setup_intent_id=setup.setup_intent_id,
        client_secret=setup.client_secret,
    )


@router.post("/card", response_model=WalletResponse, summary="Save a card")
async def save_card(
    body: SaveCardRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    wallet = await SettlementService(db).save_card(user_id, body.payment_method_id, body.last4)
    return await _wallet_view(db, wallet)


@router.delete("/card", response_model=WalletResponse, summary="Remove saved card")
async def remove_card(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    wallet = await SettlementService(db).remove_card(user_id)
    return await _wallet_view(db, wallet)
