"""
Money and points rounding helpers.

Amounts are Decimal rounded half-up to cents; points are whole numbers
rounded down from a dollar amount.
"""
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_money(value) -> Decimal:
    """Coerce a number, string or None into a cent-rounded Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if not value.is_finite():
        raise InvalidOperation(f'Not a finite amount: {value}')
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def floor_points(amount) -> int:
    """Whole points for a dollar amount: floor($12.49) == 12."""
    return int(to_money(amount).to_integral_value(rounding=ROUND_FLOOR))


def to_cents(amount) -> int:
    """Smallest currency unit, as payment processors expect."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
