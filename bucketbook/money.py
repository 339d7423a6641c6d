from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import List

ONE = Decimal("1")


def distribute_money(total_minor: int, parts: int) -> List[int]:
    """Split an integer amount into ``parts`` shares that differ by at most one unit.

    The first ``total_minor % parts`` shares receive the extra unit, so the
    result always sums back to ``total_minor``.
    """
    if parts <= 0:
        raise ValueError("parts must be greater than zero.")
    if total_minor < 0:
        raise ValueError("total_minor must not be negative.")

    base, remainder = divmod(total_minor, parts)
    return [base + 1 if index < remainder else base for index in range(parts)]


def convert_money(amount_minor: int, rate: Decimal | Fraction | int | str) -> int:
    """Apply a rate to a minor-unit amount, rounding half away from zero."""
    product = Decimal(amount_minor) * _coerce_rate(rate)
    return int(product.quantize(ONE, rounding=ROUND_HALF_UP))


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def format_minor(amount_minor: int, currency_code: str, symbol: str | None = None) -> str:
    sign = "-" if amount_minor < 0 else ""
    major, minor = divmod(abs(amount_minor), 100)
    formatted = f"{sign}{major}.{minor:02d}"
    if symbol:
        return f"{symbol}{formatted}"
    return f"{currency_code} {formatted}"


def _coerce_rate(rate: Decimal | Fraction | int | str) -> Decimal:
    if isinstance(rate, Decimal):
        return rate
    if isinstance(rate, Fraction):
        return Decimal(rate.numerator) / Decimal(rate.denominator)
    return Decimal(str(rate))
