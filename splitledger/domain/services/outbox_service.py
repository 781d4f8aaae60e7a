"""
Outbox Service - transactional outbox for push notifications

Push messages are written in the same unit as the business change and
delivered later by the Celery worker, so a slow or failing push gateway can
never roll back or delay a settlement.
"""
from __future__ import annotations

from datetime import timedelta
from typing import List
from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.config import settings
from splitledger.db.database import utcnow
from splitledger.db.models.outbox_message import OutboxMessage, MessageStatus


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    base_seconds * 2**retry_count, capped at max_backoff_seconds.

    The cap is checked before shifting so a huge retry_count never builds a
    huge integer.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Smallest exponent whose multiplier reaches ceil(max / base)
    required_multiplier = -(-max_backoff_seconds // base_seconds)
    threshold = (required_multiplier - 1).bit_length()
    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds << retry_count, max_backoff_seconds)


class OutboxService:
    """Queue, claim and settle outbox messages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_message(
        self,
        recipient_id: str,
        message_type: str,
        message_content: dict
    ) -> OutboxMessage:
        """Add a pending message to the current unit (no commit)"""
        message = OutboxMessage(
            recipient_id=recipient_id,
            message_type=message_type,
            message_content=message_content,
            status=MessageStatus.PENDING,
        )
        self.db.add(message)
        return message

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending messages whose backoff has elapsed, oldest first"""
        now = utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = utcnow()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Count the failure; schedule a retry with backoff or give up"""
        message = await self._get(message_id)
        if not message:
            return

        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.processed_at = utcnow()
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()

    async def cleanup_old_messages(self, days: int = 30) -> int:
        """Delete sent messages processed more than ``days`` ago"""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status == MessageStatus.SENT,
                OutboxMessage.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
