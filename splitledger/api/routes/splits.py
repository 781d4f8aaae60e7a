"""
Split API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.api.dependencies.auth import get_current_user
from splitledger.core.auth import TokenPayload
from splitledger.core.logging import get_logger
from splitledger.core.validation import split_name_validator
from splitledger.db.database import get_db
from splitledger.db.models.split_event import ParticipantStatus, SplitType
from splitledger.domain.services.settlement_service import SettlementService
from splitledger.domain.services.split_service import ParticipantShare, SplitService

logger = get_logger(__name__)

router = APIRouter()


class ParticipantIn(BaseModel):
    user_id: str
    amount: Optional[Decimal] = None


class SplitCreate(BaseModel):
    """Schema for creating a split event"""
    name: str
    total_amount: Decimal
    split_type: SplitType = SplitType.EQUAL
    participants: List[ParticipantIn] = Field(min_length=1)
    receipt: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return split_name_validator(v)


class RespondRequest(BaseModel):
    accept: bool
    amount: Optional[Decimal] = None


class AmountRequest(BaseModel):
    amount: Decimal


class ParticipantResponse(BaseModel):
    user_id: str
    amount: Decimal
    status: ParticipantStatus
    is_creator: bool
    last_invited_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SplitResponse(BaseModel):
    id: str
    name: str
    total_amount: Decimal
    split_type: SplitType
    receipt_url: Optional[str] = None
    creator_id: str
    created_at: datetime
    participants: List[ParticipantResponse]

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    split_event_id: str
    amount: Decimal
    rail: str
    wallet_amount: Decimal
    external_amount: Decimal
    external_fee: Decimal
    external_payment_id: Optional[str] = None
    new_balance: Decimal
    split_completed: bool

    model_config = {"from_attributes": True}


@router.post(
    "",
    response_model=SplitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a split event",
    description="Creates the event with every participant row and sends invites. Throttled per creator.",
)
async def create_split(
    body: SplitCreate,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = SplitService(db)
    return await service.create_split(
        creator_id=user.user_id,
        name=body.name,
        total_amount=body.total_amount,
        split_type=body.split_type,
        participants=[ParticipantShare(p.user_id, p.amount) for p in body.participants],
        receipt=body.receipt,
        creator_name=user.name,
    )


@router.get("", response_model=List[SplitResponse], summary="List my splits")
async def list_splits(
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SplitService(db).list_splits_for_user(user.user_id)


@router.get("/{event_id}", response_model=SplitResponse, summary="Get a split")
async def get_split(
    event_id: str,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SplitService(db).get_split(event_id, user.user_id)


@router.post(
    "/{event_id}/respond",
    response_model=ParticipantResponse,
    summary="Accept or decline an invite",
    description="On a specified split an accepting participant may set their amount in the same call.",
)
async def respond_to_split(
    event_id: str,
    body: RespondRequest,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SplitService(db).respond(
        user.user_id,
        event_id,
        accept=body.accept,
        amount=body.amount,
        user_name=user.name,
    )


@router.put("/{event_id}/amount", response_model=ParticipantResponse, summary="Set my amount")
async def set_amount(
    event_id: str,
    body: AmountRequest,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SplitService(db).set_own_amount(user.user_id, event_id, body.amount)


@router.post(
    "/{event_id}/pay",
    response_model=PaymentResponse,
    summary="Pay my share",
    description="Wallet first, then bank direct debit, then saved card.",
)
async def pay_share(
    event_id: str,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SettlementService(db).pay_share(user.user_id, event_id, user_name=user.name)


@router.post(
    "/{event_id}/participants/{participant_id}/reinvite",
    response_model=ParticipantResponse,
    summary="Re-invite a participant",
)
async def reinvite_participant(
    event_id: str,
    participant_id: str,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await SplitService(db).reinvite(
        user.user_id,
        event_id,
        participant_id,
        creator_name=user.name,
    )


@router.delete("/{event_id}", summary="Delete a split")
async def delete_split(
    event_id: str,
    user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await SplitService(db).delete_split(user.user_id, event_id, creator_name=user.name)
    return {"success": True, "split_event_id": event_id}
