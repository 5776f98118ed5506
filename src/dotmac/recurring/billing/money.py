"""
Money and currency utilities using py-moneyed and Babel.

Amounts are ``Decimal`` throughout. Intermediate proration figures keep four
decimal places; anything charged or credited is rounded half-up to cents.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, get_currency
from moneyed.classes import CurrencyDoesNotExist

DEFAULT_LOCALE = "en_US"

INTERMEDIATE_QUANTUM = Decimal("0.0001")
CENT_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def validate_currency(currency_code: str) -> str:
    """Return the upper-cased ISO code, raising ``ValueError`` when unknown."""
    try:
        currency: Currency = get_currency(currency_code.upper())
    except CurrencyDoesNotExist:
        raise ValueError(f"Invalid currency code: {currency_code}")
    return currency.code


def to_decimal(amount: int | float | Decimal | str) -> Decimal:
    """Convert to Decimal without float artefacts."""
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def quantize_intermediate(amount: Decimal) -> Decimal:
    """Four-decimal precision used for unused/prorated figures."""
    return amount.quantize(INTERMEDIATE_QUANTUM, rounding=ROUND_HALF_UP)


def round_amount(amount: Decimal) -> Decimal:
    """Final rounding for anything charged or credited (2 dp, half-up)."""
    return amount.quantize(CENT_QUANTUM, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert to minor units (e.g. cents for USD)."""
    precision = get_currency_precision(currency.upper())
    return int((amount * (10**precision)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(
    amount: Decimal, currency: str, locale: str = DEFAULT_LOCALE, **kwargs: Any
) -> str:
    """Locale-aware formatting, e.g. ``$66.67``."""
    try:
        Locale.parse(locale)
    except (UnknownLocaleError, ValueError):
        locale = DEFAULT_LOCALE
    try:
        return format_currency(number=amount, currency=currency.upper(), locale=locale, **kwargs)
    except (TypeError, ValueError):
        # Fallback to simple formatting if locale issues
        return f"{currency.upper()} {amount}"


__all__ = [
    "CENT_QUANTUM",
    "INTERMEDIATE_QUANTUM",
    "ZERO",
    "format_amount",
    "quantize_intermediate",
    "round_amount",
    "to_decimal",
    "to_minor_units",
    "validate_currency",
]
