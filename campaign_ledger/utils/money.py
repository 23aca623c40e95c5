"""Money parsing for caller-supplied amounts."""

from decimal import Decimal, InvalidOperation
from typing import Any

from ..exceptions import ValidationError


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a caller-supplied amount to Decimal.

    Floats go through str() so 0.1 stays 0.1. Booleans, NaN and infinities are
    rejected.

    Raises:
        ValidationError: value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", {"field": field})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}", {"field": field}) from None
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite", {"field": field})
    return amount
