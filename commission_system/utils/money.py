# commission_system/utils/money.py
"""
Money helpers: Decimal quantization and currency normalization.
"""
from decimal import Decimal, ROUND_HALF_UP

from config import Config

BASE_CURRENCY = "KZT"


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_money(value) -> Decimal:
    """Quantize to the configured money quantum (0.01 by default)."""
    quantum = Config.get(Config.MONEY_QUANTUM) or Decimal("0.01")
    return to_decimal(value).quantize(to_decimal(quantum), rounding=ROUND_HALF_UP)


def normalize_amount(amount, currency: str) -> Decimal:
    """
    Convert a payment amount to the base currency with the fixed rate.

    Only KZT and USD are accepted.
    """
    from commission_system.errors import ValidationError

    currency = (currency or BASE_CURRENCY).upper()
    amount = to_decimal(amount)

    if currency == BASE_CURRENCY:
        return to_money(amount)
    if currency == "USD":
        return to_money(amount * to_decimal(Config.get(Config.USD_KZT_RATE)))

    raise ValidationError(f"Unsupported currency: {currency}")
