"""Amount conversion helpers using fixed micro-unit precision."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_UNIT = 1_000_000
_UNIT_QUANT = Decimal("0.000001")


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend or invoice amount to micros, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_UNIT)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spending limit to micros, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def micros_to_float(value: int) -> float:
    """Convert integer micros to a float amount (for display APIs)."""
    return float(micros_to_decimal(value))


def format_amount(value: int, currency: str = "USDC") -> str:
    """Format integer micros as ``12.50 USDC``."""
    return f"{micros_to_decimal(value):.2f} {currency}"


def format_token_amount(raw: int, decimals: int) -> str:
    """Render a raw integer token amount as a decimal string.

    Trailing fractional zeros are trimmed and the decimal point is dropped when
    the fraction is zero: ``format_token_amount(1500000000000000000, 18)`` is
    ``"1.5"``.
    """
    divisor = 10 ** decimals
    whole, fraction = divmod(raw, divisor)
    trimmed = str(fraction).rjust(decimals, "0").rstrip("0") if decimals else ""
    if not trimmed:
        return str(whole)
    return f"{whole}.{trimmed}"
