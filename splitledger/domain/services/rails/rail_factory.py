"""
Rail Factory - process-wide rail singletons.

- get_bank_debit_rail() - bank direct debit (BlinkPay-compatible)
- get_card_rail() - saved cards (Stripe-compatible)
"""
from __future__ import annotations

import threading

from splitledger.core.circuit_breaker import get_bank_debit_circuit_breaker, get_card_circuit_breaker
from splitledger.core.logging import get_logger
from splitledger.domain.services.rails.base_rail import BaseBankDebitRail, BaseCardRail

logger = get_logger(__name__)

_bank_debit_rail: BaseBankDebitRail | None = None
_card_rail: BaseCardRail | None = None
_lock = threading.Lock()


def get_bank_debit_rail() -> BaseBankDebitRail:
    global _bank_debit_rail
    if _bank_debit_rail is None:
        with _lock:
            if _bank_debit_rail is None:
                from splitledger.domain.services.rails.bank_debit_provider import BlinkDebitProvider

                _bank_debit_rail = BlinkDebitProvider(circuit_breaker=get_bank_debit_circuit_breaker())
                logger.info("Bank debit rail initialized", extra_data={"rail": _bank_debit_rail.name})
    return _bank_debit_rail


def get_card_rail() -> BaseCardRail:
    global _card_rail
    if _card_rail is None:
        with _lock:
            if _card_rail is None:
                from splitledger.domain.services.rails.card_provider import StripeCardProvider

                _card_rail = StripeCardProvider(circuit_breaker=get_card_circuit_breaker())
                logger.info("Card rail initialized", extra_data={"rail": _card_rail.name})
    return _card_rail


def set_rails(
    bank_debit: BaseBankDebitRail | None = None,
    card: BaseCardRail | None = None,
) -> None:
    """Install specific rail instances (tests, sandboxes)"""
    global _bank_debit_rail, _card_rail
    with _lock:
        if bank_debit is not None:
            _bank_debit_rail = bank_debit
        if card is not None:
            _card_rail = card


def reset_rails() -> None:
    """Drop cached rails - tests only"""
    global _bank_debit_rail, _card_rail
    with _lock:
        _bank_debit_rail = None
        _card_rail = None
