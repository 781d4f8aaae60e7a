"""
Transaction Model - immutable wallet history
"""
import enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, JSON, Index,
    Enum as SQLEnum,
)

from splitledger.db.database import Base, utcnow


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SPLIT_PAYMENT = "split_payment"
    SPLIT_RECEIVED = "split_received"


class TransactionDirection(str, enum.Enum):
    IN = "in"
    OUT = "out"


class Transaction(Base):
    """One row per balance mutation, written in the same unit as the balance update"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)

    type = Column(SQLEnum(TransactionType), nullable=False)
    direction = Column(SQLEnum(TransactionDirection), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # Positive for in, negative for out
    balance_after = Column(Numeric(12, 2), nullable=False)

    description = Column(String(500), nullable=True)
    split_event_id = Column(
        String(36),
        ForeignKey("split_events.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
    )
