"""
Wallet Model - one stored-value balance per user
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, CheckConstraint

from splitledger.db.database import Base, utcnow


class Wallet(Base):
    """
    Current balance plus the user's linked payment instruments.

    ``balance`` changes only through LedgerService primitives, never by
    recomputing it from the transaction log.
    """

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)

    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Bank direct-debit consent
    bank_connected = Column(Boolean, nullable=False, default=False)
    bank_consent_id = Column(String(100), nullable=True)
    pending_consent_id = Column(String(100), nullable=True)
    bank_consent_expires_at = Column(DateTime, nullable=True)

    # Saved card
    card_customer_id = Column(String(100), nullable=True)
    card_payment_method_id = Column(String(100), nullable=True)
    card_last4 = Column(String(4), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    @property
    def has_card(self) -> bool:
        return bool(self.card_customer_id and self.card_payment_method_id)

    def has_active_consent(self, now=None) -> bool:
        if not self.bank_connected or not self.bank_consent_id:
            return False
        if self.bank_consent_expires_at is None:
            return True
        return self.bank_consent_expires_at > (now or utcnow())
