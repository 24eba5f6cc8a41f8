"""
Common utility functions for the copy-trading engine.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


def safe_decimal(value: Any, default: Optional[Decimal] = None) -> Decimal:
    """
    Safely convert a wire value (usually decimal text) to Decimal.

    Floats go through ``str`` so that ``0.1`` stays ``Decimal("0.1")``.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Decimal value or default
    """
    if default is None:
        default = ZERO

    if value is None or value == '':
        return default

    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Failed to convert {value!r} to Decimal, using default {default}")
        return default

    if not result.is_finite():
        return default
    return result


def quantize_down(amount: Decimal, lot_size: Decimal) -> Decimal:
    """
    Round an amount down to a whole number of lots.

    Rounds toward zero, so the result never exceeds a non-negative input
    and applying it twice changes nothing.

    Args:
        amount: Raw order amount
        lot_size: Minimum tradable increment (must be positive)

    Returns:
        Largest multiple of ``lot_size`` not above ``amount`` (0 for non-positive input)
    """
    if lot_size <= 0:
        raise ValueError(f"lot_size must be positive, got {lot_size}")
    if amount <= 0:
        return ZERO
    return (amount // lot_size) * lot_size


def format_amount(amount: Decimal) -> str:
    """
    Render a Decimal as plain decimal text without exponent or trailing zeros.

    ``Decimal("0.00100")`` -> ``"0.001"``, ``Decimal("1E+1")`` -> ``"10"``.
    """
    if amount == 0:
        return "0"
    text = format(amount.normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def normalize_symbol(symbol: str) -> str:
    """
    Normalize trading symbol format.

    Args:
        symbol: Symbol to normalize

    Returns:
        Normalized symbol
    """
    return str(symbol or "").strip().upper()


def get_timestamp_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)
