"""
Payment rails - external money movement behind fixed-shape interfaces

- BaseBankDebitRail: enduring-consent bank direct debit
- BaseCardRail: saved-card off-session charges
- rail_factory: process-wide rail singletons
"""
from splitledger.domain.services.rails.base_rail import (
    BaseBankDebitRail,
    BaseCardRail,
    BankConsent,
    CardSetup,
    ConsentInfo,
    RailResult,
    RailStatus,
)
from splitledger.domain.services.rails.rail_factory import (
    get_bank_debit_rail,
    get_card_rail,
    reset_rails,
    set_rails,
)

__all__ = [
    "BaseBankDebitRail",
    "BaseCardRail",
    "BankConsent",
    "CardSetup",
    "ConsentInfo",
    "RailResult",
    "RailStatus",
    "get_bank_debit_rail",
    "get_card_rail",
    "reset_rails",
    "set_rails",
]
