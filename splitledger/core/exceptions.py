"""
Custom Exception Hierarchy

Every error the settlement engine can surface to a client is an AppException
carrying an ErrorCode, an HTTP status and a details dict. The details always
include ``retryable`` and ``action`` so a client can tell "try again later"
apart from "add funds / connect a bank".
"""
from decimal import Decimal
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Split errors (2xxx)
    SPLIT_NOT_FOUND = "ERR_2001"
    INVALID_TRANSITION = "ERR_2002"

    # Wallet errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INSUFFICIENT_FUNDS = "ERR_4003"
    BANK_NOT_CONNECTED = "ERR_4004"
    SETTLEMENT_IN_PROGRESS = "ERR_4005"

    # Payment rail / external service errors (5xxx)
    PAYMENT_PENDING = "ERR_5001"
    PAYMENT_FAILED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


def _money(value: Decimal | float | int) -> str:
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


class AppException(Exception):
    """Base exception for all application errors"""

    retryable: bool = False
    action: str | None = None

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.details.setdefault("retryable", self.retryable)
        self.details.setdefault("action", self.action)


class ValidationException(AppException):
    """Raised when input validation fails"""

    action = "fix_input"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class UnauthorizedError(AppException):
    """Raised when the bearer token is missing or invalid"""

    action = "sign_in"

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class ForbiddenError(AppException):
    """Raised when the caller may not act on the resource"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SplitNotFoundError(NotFoundException):
    """Raised when a split event does not exist or is not visible to the caller"""

    def __init__(self, split_event_id: str):
        super().__init__("Split event", split_event_id, ErrorCode.SPLIT_NOT_FOUND)


class WalletNotFoundError(NotFoundException):
    """Raised when a user has no wallet row"""

    def __init__(self, user_id: str):
        super().__init__("Wallet", user_id, ErrorCode.WALLET_NOT_FOUND)


class RateLimitedError(AppException):
    """Raised when an abuse policy rejects an operation"""

    retryable = True
    action = "wait"

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        reason: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details=details
        )
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        self.reason = reason
        self.details["retry_after_seconds"] = self.retry_after_seconds
        self.details["reason"] = reason


class InvalidTransitionError(AppException):
    """Raised when a participant state change is not allowed"""

    def __init__(self, current_state: str, target_state: str, message: str | None = None):
        super().__init__(
            message=message or f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_TRANSITION,
            status_code=409,
            details={"current_state": current_state, "target_state": target_state}
        )


class InsufficientBalanceError(AppException):
    """Raised when a wallet debit exceeds the balance"""

    action = "top_up"

    def __init__(self, user_id: str, balance: Decimal, requested: Decimal):
        super().__init__(
            message=f"Insufficient balance: ${_money(balance)} available, ${_money(requested)} requested",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            status_code=400,
            details={
                "user_id": user_id,
                "balance": _money(balance),
                "requested": _money(requested),
            }
        )


class InsufficientFundsError(AppException):
    """Raised when no payment rail can cover a split payment"""

    action = "connect_bank_or_top_up"

    def __init__(self, balance: Decimal, amount_owed: Decimal):
        shortfall = Decimal(str(amount_owed)) - Decimal(str(balance))
        super().__init__(
            message=(
                f"Insufficient funds. You have ${_money(balance)} but owe "
                f"${_money(amount_owed)}. Connect a bank account or top up your wallet."
            ),
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            status_code=402,
            details={
                "balance": _money(balance),
                "amount_owed": _money(amount_owed),
                "shortfall": _money(shortfall),
            }
        )


class BankNotConnectedError(AppException):
    """Raised when an operation needs an active bank consent"""

    action = "connect_bank"

    def __init__(self, user_id: str):
        super().__init__(
            message="Please connect your bank account first",
            error_code=ErrorCode.BANK_NOT_CONNECTED,
            status_code=400,
            details={"user_id": user_id}
        )


class SettlementInProgressError(AppException):
    """Raised when the payer already has a settlement in flight"""

    retryable = True
    action = "wait"

    def __init__(self, user_id: str, message: str | None = None):
        super().__init__(
            message=message or "Another payment for this account is already in progress",
            error_code=ErrorCode.SETTLEMENT_IN_PROGRESS,
            status_code=409,
            details={"user_id": user_id}
        )


class PaymentRailError(AppException):
    """Base exception for external payment rail outcomes"""

    retryable = True
    action = "retry"

    def __init__(
        self,
        rail: str,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        payment_id: str | None = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details={"rail": rail, "payment_id": payment_id}
        )
        self.rail = rail
        self.payment_id = payment_id


class PaymentPendingError(PaymentRailError):
    """Raised when an external payment was not confirmed in time"""

    action = "check_later"

    def __init__(self, rail: str, payment_id: str | None = None):
        super().__init__(
            rail=rail,
            message="Payment is still processing. Please check again shortly.",
            error_code=ErrorCode.PAYMENT_PENDING,
            status_code=409,
            payment_id=payment_id,
        )


class PaymentFailedError(PaymentRailError):
    """Raised when an external rail explicitly rejected the payment"""

    def __init__(self, rail: str, payment_id: str | None = None, reason: str | None = None):
        super().__init__(
            rail=rail,
            message=f"Payment via {rail} failed" + (f": {reason}" if reason else ""),
            error_code=ErrorCode.PAYMENT_FAILED,
            status_code=402,
            payment_id=payment_id,
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    retryable = True
    action = "retry"

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ExternalServiceException":
        """Build from an httpx response without logging the whole body"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=f"{service_name} {operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
