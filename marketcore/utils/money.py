from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Parse a money-ish value; raises ValueError on garbage or non-finite input."""
    if isinstance(value, bool):
        raise ValueError("amount invalid")
    if isinstance(value, Decimal):
        parsed = value
    else:
        text_value = str(value if value is not None else "").strip()
        if text_value == "":
            raise ValueError("amount required")
        try:
            parsed = Decimal(text_value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError("amount invalid")
    if not parsed.is_finite():
        raise ValueError("amount invalid")
    return parsed


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
