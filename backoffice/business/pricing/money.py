from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from numbers import Rational


_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "CAD": "CA$", "AUD": "A$", "INR": "₹"}


def round_cents(value: int | Decimal | Fraction) -> int:
    """Round a rational amount to whole cents, ties away from zero."""

    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError("monetary amounts must be int, Decimal or Fraction")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if isinstance(value, Rational):
        fraction = Fraction(value)
        magnitude = abs(fraction) + Fraction(1, 2)
        rounded = magnitude.numerator // magnitude.denominator
        return -rounded if fraction < 0 else rounded
    raise TypeError(f"unsupported amount type {type(value).__name__}")


def divide(amount: int, divisor: int) -> int:
    return round_cents(Fraction(amount, divisor))


def to_monthly_equivalent(yearly_amount: int) -> int:
    return divide(yearly_amount, 12)


def format_cents(amount: int, currency: str = "USD") -> str:
    sign = "-" if amount < 0 else ""
    units, cents = divmod(abs(amount), 100)
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{sign}{units:,}.{cents:02d} {currency.upper()}"
    return f"{sign}{symbol}{units:,}.{cents:02d}"
