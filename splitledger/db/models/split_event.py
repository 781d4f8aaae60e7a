"""
Split Event Models - a shared bill and each person's share of it
"""
import enum
import uuid
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Boolean, Index,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from splitledger.db.database import Base, utcnow


class SplitType(str, enum.Enum):
    EQUAL = "equal"
    SPECIFIED = "specified"


class ParticipantStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    PAID = "paid"


class SplitEvent(Base):
    """A bill split among participants; total is fixed at creation"""

    __tablename__ = "split_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(120), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    split_type = Column(SQLEnum(SplitType), nullable=False, default=SplitType.EQUAL)
    receipt_url = Column(String(500), nullable=True)
    creator_id = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    participants = relationship(
        "SplitParticipant",
        back_populates="split_event",
        cascade="all, delete-orphan",
        order_by="SplitParticipant.id",
    )

    __table_args__ = (
        Index("ix_split_events_creator_created", "creator_id", "created_at"),
    )


class SplitParticipant(Base):
    """A participant's owed amount and status within one split"""

    __tablename__ = "split_participants"

    id = Column(Integer, primary_key=True, index=True)
    split_event_id = Column(
        String(36),
        ForeignKey("split_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False, index=True)

    # Zero on a specified split means the participant fills it in
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(ParticipantStatus), nullable=False, default=ParticipantStatus.PENDING)
    is_creator = Column(Boolean, nullable=False, default=False)

    last_invited_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # External payment in flight for this share. Set before any rail is
    # called, cleared once the payment is recorded or explicitly fails.
    settling_rail = Column(String(20), nullable=True)
    settling_payment_id = Column(String(100), nullable=True)
    settling_charge = Column(Numeric(12, 2), nullable=True)
    settling_fee = Column(Numeric(12, 2), nullable=True)
    settling_wallet_amount = Column(Numeric(12, 2), nullable=True)
    settling_since = Column(DateTime, nullable=True)
    # Bumped after an explicit failure so the next attempt gets fresh idempotency keys
    payment_attempts = Column(Integer, nullable=False, default=0)

    split_event = relationship("SplitEvent", back_populates="participants")

    @property
    def is_settling(self) -> bool:
        return self.settling_rail is not None

    def clear_settling(self) -> None:
        self.settling_rail = None
        self.settling_payment_id = None
        self.settling_charge = None
        self.settling_fee = None
        self.settling_wallet_amount = None
        self.settling_since = None

    __table_args__ = (
        UniqueConstraint("split_event_id", "user_id", name="uq_split_participant"),
    )
