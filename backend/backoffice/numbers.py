from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

from .errors import ValidationError

ZERO = Decimal("0")

# Quantities are stored with three decimals (Kg), money with two.
QTY_QUANTUM = Decimal("0.001")
MONEY_QUANTUM = Decimal("0.01")


def to_decimal(value, field: str, *, allow_none: bool = False) -> Optional[Decimal]:
    """
    Coerce request input into a Decimal.

    Floats are routed through str() so 0.1 stays 0.1. Booleans are rejected
    even though they are ints.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def positive(value, field: str) -> Decimal:
    result = to_decimal(value, field)
    if result <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return result


def non_negative(value, field: str, *, default: Decimal | None = None) -> Decimal:
    if value is None and default is not None:
        return default
    result = to_decimal(value, field)
    if result < 0:
        raise ValidationError(f"{field} must be >= 0")
    return result


def qty(value: Decimal) -> Decimal:
    return Decimal(value).quantize(QTY_QUANTUM)


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANTUM)


def dec_str(value) -> Optional[str]:
    """JSON-safe rendering of a Decimal column (None stays None)."""
    if value is None:
        return None
    d = Decimal(value)
    # drop trailing zeros but never use exponent notation
    normalized = d.normalize()
    if normalized == normalized.to_integral():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")
