"""
Database Models
"""
from splitledger.db.models.wallet import Wallet
from splitledger.db.models.transaction import Transaction, TransactionType, TransactionDirection
from splitledger.db.models.split_event import SplitEvent, SplitParticipant, SplitType, ParticipantStatus
from splitledger.db.models.notification import Notification, NotificationType
from splitledger.db.models.outbox_message import OutboxMessage, MessageStatus

__all__ = [
    "Wallet",
    "Transaction",
    "TransactionType",
    "TransactionDirection",
    "SplitEvent",
    "SplitParticipant",
    "SplitType",
    "ParticipantStatus",
    "Notification",
    "NotificationType",
    "OutboxMessage",
    "MessageStatus",
]
