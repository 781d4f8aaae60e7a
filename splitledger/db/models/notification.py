"""
Notification Model - in-app notification records
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean, JSON, Index,
    Enum as SQLEnum,
)

from splitledger.db.database import Base, utcnow


class NotificationType(str, enum.Enum):
    SPLIT_INVITE = "split_invite"
    SPLIT_ACCEPTED = "split_accepted"
    SPLIT_DECLINED = "split_declined"
    SPLIT_PAID = "split_paid"
    SPLIT_COMPLETED = "split_completed"
    SPLIT_CANCELLED = "split_cancelled"
    SPLIT_REMINDER = "split_reminder"
    WITHDRAWAL_INITIATED = "withdrawal_initiated"
    DEPOSIT_RECEIVED = "deposit_received"


class Notification(Base):
    """
    One row per in-app notification.

    ``dedup_key`` is set for one-time notifications; its unique constraint
    makes a duplicate insert fail instead of notifying twice.
    """

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    type = Column(SQLEnum(NotificationType), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(String(1000), nullable=False)
    split_event_id = Column(
        String(36),
        ForeignKey("split_events.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    meta = Column("metadata", JSON, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    dedup_key = Column(String(200), nullable=True, unique=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_type_created", "user_id", "type", "created_at"),
    )
