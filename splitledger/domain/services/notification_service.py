"""
Notification Service

Writes the in-app notification row and queues the matching push message in
the caller's unit of work. Neither is committed here.
"""
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.logging import get_logger
from splitledger.db.models.notification import Notification, NotificationType
from splitledger.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


def completion_dedup_key(split_event_id: str) -> str:
    return f"split_completed:{split_event_id}"


class NotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox = OutboxService(db)

    async def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        split_event_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        dedup_key: str | None = None,
    ) -> Optional[Notification]:
        """
        Record a notification and queue its push.

        With ``dedup_key`` the insert runs in a savepoint; a duplicate key
        returns None and queues nothing.
        """
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            split_event_id=split_event_id,
            meta=metadata,
            dedup_key=dedup_key,
        )

        if dedup_key:
            try:
                async with self.db.begin_nested():
                    self.db.add(notification)
            except IntegrityError:
                logger.info(
                    "Duplicate one-time notification skipped",
                    extra_data={"dedup_key": dedup_key, "user_id": user_id},
                )
                return None
        else:
            self.db.add(notification)

        await self.outbox.queue_message(
            recipient_id=user_id,
            message_type=type.value,
            message_content={
                "title": title,
                "body": message,
                "data": {
                    "type": type.value,
                    "split_event_id": split_event_id,
                    **(metadata or {}),
                },
            },
        )
        return notification

    async def exists_for_event(self, split_event_id: str, type: NotificationType) -> bool:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.split_event_id == split_event_id,
                Notification.type == type,
            )
        )
        return (result.scalar() or 0) > 0

    async def last_sent_at(self, user_id: str, type: NotificationType) -> Optional[datetime]:
        result = await self.db.execute(
            select(func.max(Notification.created_at)).where(
                Notification.user_id == user_id,
                Notification.type == type,
            )
        )
        return result.scalar()

