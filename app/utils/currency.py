"""Money helpers: every amount is a Decimal quantized to cents."""
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Exact cents. Floats go through str() so 10.1 stays 10.10, not 10.0999..."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def apply_markup(price: Decimal | int | float | str, percent: Decimal | int | str) -> Decimal:
    """apply_markup(100, 2) -> Decimal('102.00')"""
    base = to_money(price)
    return to_money(base * (Decimal(1) + Decimal(str(percent)) / Decimal(100)))
