"""
Input Validation Utilities

- Money amounts (Decimal, two places, bounded)
- Split names and free text (sanitized, script injection rejected)
- User ids from the identity provider
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from splitledger.core.config import settings
from splitledger.core.exceptions import ValidationException

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Exact Decimal quantized to cents. Floats go through str() first."""
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class ValidationPatterns:
    """Regex patterns for validation"""

    # Identity provider subjects: uuids, auth0-style "provider|id", emails
    USER_ID = re.compile(r"^[A-Za-z0-9_\-\|\.@:]{1,64}$")

    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
        re.compile(r"<object", re.IGNORECASE),
        re.compile(r"<embed", re.IGNORECASE),
    ]


class TextSanitizer:
    """Text sanitization for storage"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Trim, cap the length, drop null bytes and control characters,
        collapse runs of spaces. Does not HTML-escape.
        """
        if not text:
            return ""

        sanitized = "".join(
            char for char in text.strip()
            if char >= " " or char in "\n\t"
        )
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized[:max_length]

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """Returns (is_safe, detected_pattern)"""
        if not text:
            return True, None

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "Script injection pattern detected"

        return True, None


class SplitNameValidator:
    """Split event names ("Dinner at Sals", "Flat power bill")"""

    MIN_LENGTH = 1
    MAX_LENGTH = 120

    @staticmethod
    def validate(name: str | None) -> tuple[bool, str | None]:
        if not name or not name.strip():
            return False, "Split name is required"

        if len(name.strip()) > SplitNameValidator.MAX_LENGTH:
            return False, f"Split name too long (maximum {SplitNameValidator.MAX_LENGTH} characters)"

        is_safe, pattern = TextSanitizer.check_for_injection(name)
        if not is_safe:
            return False, f"Invalid split name: {pattern}"

        return True, None


class UserIdValidator:

    @staticmethod
    def validate(user_id: str | None) -> bool:
        return bool(user_id) and bool(ValidationPatterns.USER_ID.match(user_id))


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def validate(
        amount,
        min_value: Decimal = CENT,
        max_value: Decimal | None = None,
    ) -> tuple[bool, str | None]:
        """
        Validate a monetary amount.

        Args:
            amount: Decimal, int, str or float
            min_value: Minimum allowed value (inclusive)
            max_value: Maximum allowed value, MAX_TRANSACTION_AMOUNT by default

        Returns:
            Tuple of (is_valid, error_message)
        """
        if max_value is None:
            max_value = to_money(settings.MAX_TRANSACTION_AMOUNT)

        if amount is None or isinstance(amount, bool):
            return False, "Amount is required"

        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError):
            return False, "Amount must be a number"

        if not value.is_finite():
            return False, "Amount must be a number"

        if value < min_value:
            if min_value == CENT:
                return False, "Amount must be greater than zero"
            return False, f"Amount must be at least {min_value}"

        if value > max_value:
            return False, f"Amount cannot exceed {max_value}"

        if value != value.quantize(CENT):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None

    @staticmethod
    def require(amount, field: str = "amount", **kwargs) -> Decimal:
        """Validate and return the cent-quantized Decimal, or raise ValidationException"""
        is_valid, error = AmountValidator.validate(amount, **kwargs)
        if not is_valid:
            raise ValidationException(error, field=field)
        return to_money(amount)


def split_name_validator(v: str | None) -> str | None:
    """Pydantic field validator for split names"""
    if v is None:
        return None
    is_valid, error = SplitNameValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return TextSanitizer.sanitize(v, max_length=SplitNameValidator.MAX_LENGTH)


def sanitized_text_validator(v: str | None, max_length: int = 1000) -> str | None:
    """Pydantic field validator for sanitized text"""
    if v is None:
        return None
    is_safe, pattern = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError(f"Invalid input: {pattern}")
    return TextSanitizer.sanitize(v, max_length)
