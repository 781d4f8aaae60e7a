"""
Domain Services
"""
from splitledger.domain.services.ledger_service import LedgerService
from splitledger.domain.services.outbox_service import OutboxService
from splitledger.domain.services.notification_service import NotificationService
from splitledger.domain.services.split_service import SplitService
from splitledger.domain.services.payment_rail_service import PaymentRailService
from splitledger.domain.services.settlement_service import SettlementService
from splitledger.domain.services.reminder_service import ReminderService

__all__ = [
    "LedgerService",
    "OutboxService",
    "NotificationService",
    "SplitService",
    "PaymentRailService",
    "SettlementService",
    "ReminderService",
]
