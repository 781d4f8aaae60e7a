"""
Fixtures and helpers for end-to-end scenarios.

Provides:
- short request helpers that act as a given user
- DB assertions for balances, participant status and notifications
"""
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.db.models.notification import Notification, NotificationType
from splitledger.db.models.split_event import ParticipantStatus
from splitledger.domain.services.ledger_service import LedgerService
from splitledger.domain.services.split_service import SplitService


# ============================================================================
# Request helpers
# ============================================================================

async def create_split(client, headers, name: str, total: str, participants: list, split_type: str = "equal"):
    body = {
        "name": name,
        "total_amount": total,
        "split_type": split_type,
        "participants": [
            p if isinstance(p, dict) else {"user_id": p}
            for p in participants
        ],
    }
    return await client.post("/api/splits", json=body, headers=headers)


async def accept(client, headers, event_id: str, amount: Optional[str] = None):
    body = {"accept": True}
    if amount is not None:
        body["amount"] = amount
    return await client.post(f"/api/splits/{event_id}/respond", json=body, headers=headers)


async def pay(client, headers, event_id: str):
    return await client.post(f"/api/splits/{event_id}/pay", headers=headers)


# ============================================================================
# DB assertions
# ============================================================================

async def assert_wallet_balance(db: AsyncSession, user_id: str, expected: str) -> None:
    balance = await LedgerService(db).get_balance(user_id)
    assert balance == Decimal(expected), f"{user_id}: balance {balance}, expected {expected}"


async def assert_participant_status(db: AsyncSession, event_id: str, user_id: str, expected: ParticipantStatus) -> None:
    event = await SplitService(db).get_event(event_id)
    participant = SplitService.find_participant(event, user_id)
    assert participant is not None, f"{user_id} is not part of {event_id}"
    assert ParticipantStatus(participant.status) == expected


async def count_notifications(db: AsyncSession, user_id: str, type: NotificationType) -> int:
    result = await db.execute(
        select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.type == type,
        )
    )
    return result.scalar_one()


@pytest.fixture
def as_user(auth_headers):
    """as_user("bob") -> headers for Bob with a display name"""
    def _as(user_id: str) -> dict[str, str]:
        return auth_headers(user_id, name=user_id.capitalize())

    return _as
