"""Money helpers using fixed micro-dollar precision."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_USD = 1_000_000
_USD_QUANT = Decimal("0.000001")
_AMOUNT_RE = re.compile(r"^\d*\.?\d+$")


def parse_amount(value: str) -> Decimal:
    """Parse a non-negative decimal amount string such as ``"0.01"``."""
    if not isinstance(value, str) or not _AMOUNT_RE.match(value.strip()):
        raise ValueError(f"Amount must be a non-negative decimal string: {value!r}")
    try:
        return Decimal(value.strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to micro-dollars, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a budget limit to micro-dollars, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)


def micros_to_float(value: int) -> float:
    """Float USD, for display and JSON analytics only."""
    return float(micros_to_decimal(value))


def format_usd_from_micros(value: int) -> str:
    return f"${micros_to_decimal(value):.2f}"
