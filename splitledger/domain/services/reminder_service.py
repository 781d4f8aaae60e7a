"""
Reminder Service - periodic nudges for unpaid shares

Runs hourly from Celery beat. Safe to run as often as you like: a user gets
at most one split_reminder per REMINDER_INTERVAL_HOURS, judged from their
latest reminder notification.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.config import settings
from splitledger.core.logging import get_logger
from splitledger.core.validation import ZERO
from splitledger.db.database import utcnow
from splitledger.db.models.notification import NotificationType
from splitledger.db.models.split_event import ParticipantStatus, SplitEvent, SplitParticipant
from splitledger.domain.services.notification_service import NotificationService

logger = get_logger(__name__)

UNPAID_STATUSES = (ParticipantStatus.PENDING, ParticipantStatus.ACCEPTED)


def reminder_message(shares: list[tuple[str, str, Decimal]]) -> str:
    """shares: (split_event_id, split name, amount) for one user"""
    total = sum((amount for _, _, amount in shares), ZERO)
    if len(shares) == 1:
        return f'You have ${total} pending for "{shares[0][1]}". Tap to pay now!'
    names = ", ".join(name for _, name, _ in shares)
    return f"You have ${total} pending across {len(shares)} splits ({names}). Tap to settle up!"


class ReminderService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.notifications = NotificationService(db)

    async def _unpaid_by_user(self) -> dict[str, list[tuple[str, str, Decimal]]]:
        result = await self.db.execute(
            select(SplitParticipant.user_id, SplitEvent.id, SplitEvent.name, SplitParticipant.amount)
            .join(SplitEvent, SplitEvent.id == SplitParticipant.split_event_id)
            .where(
                SplitParticipant.is_creator.is_(False),
                SplitParticipant.status.in_(UNPAID_STATUSES),
            )
            .order_by(SplitParticipant.user_id, SplitEvent.created_at)
        )
        grouped: dict[str, list[tuple[str, str, Decimal]]] = defaultdict(list)
        for user_id, event_id, name, amount in result.all():
            grouped[user_id].append((event_id, name, Decimal(amount)))
        return grouped

    async def send_split_reminders(self, now: Optional[datetime] = None) -> int:
        """Returns the number of reminders sent"""
        now = now or utcnow()
        interval = timedelta(hours=settings.REMINDER_INTERVAL_HOURS)
        sent = 0

        for user_id, shares in (await self._unpaid_by_user()).items():
            last = await self.notifications.last_sent_at(user_id, NotificationType.SPLIT_REMINDER)
            if last is not None and now - last < interval:
                continue

            total = sum((amount for _, _, amount in shares), ZERO)
            await self.notifications.notify(
                user_id=user_id,
                type=NotificationType.SPLIT_REMINDER,
                title="Payment Reminder",
                message=reminder_message(shares),
                metadata={
                    "split_event_ids": [event_id for event_id, _, _ in shares],
                    "total": str(total),
                },
            )
            sent += 1

        await self.db.commit()
        logger.info("Split reminders sent", extra_data={"count": sent})
        return sent
