"""
Outbox Message Model - transactional outbox for push delivery
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from splitledger.db.database import Base, utcnow


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Push messages written with the business change, delivered later by a worker"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    recipient_id = Column(String(64), nullable=False)  # user id
    message_type = Column(String(50), nullable=False)  # notification type
    message_content = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
