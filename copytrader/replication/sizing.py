"""
Order sizing and risk clamps for copied trades.

Pure Decimal functions; the coordinator supplies balances and positions.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from ..common.types import SizingMethod
from ..common.utils import ZERO, quantize_down, safe_decimal

HUNDRED = Decimal("100")

# Position payloads are not uniform across endpoints
_AMOUNT_KEYS = ("amount", "size")
_PRICE_KEYS = ("entry_price", "entryPrice", "mark_price", "markPrice", "price")


def base_amount(
    method: SizingMethod,
    value: Decimal,
    fill_amount: Decimal,
    fill_price: Decimal,
    available_balance: Optional[Decimal] = None,
) -> Decimal:
    """
    Copier amount before any clamp.

    Args:
        method: Sizing method of the relationship
        value: Sizing value (multiplier, USD amount or percent)
        fill_amount: Master fill amount
        fill_price: Master fill price
        available_balance: Copier balance, required for balance_percent

    Returns:
        Raw order amount in base units
    """
    if method == SizingMethod.MULTIPLIER:
        return fill_amount * value
    if method == SizingMethod.FIXED_USD:
        return value / fill_price
    if method == SizingMethod.BALANCE_PERCENT:
        if available_balance is None:
            raise ValueError("balance_percent sizing requires the available balance")
        return (available_balance * value / HUNDRED) / fill_price
    raise ValueError(f"Unknown sizing method: {method}")


def apply_symbol_multiplier(amount: Decimal, multiplier: Optional[Decimal]) -> Decimal:
    if not multiplier:
        return amount
    return amount * multiplier


def apply_position_cap(amount: Decimal, price: Decimal, cap: Optional[Decimal]) -> Decimal:
    """Clamp so that ``amount * price`` never exceeds ``cap``."""
    if not cap:
        return amount
    return min(amount, cap / price)


def apply_leverage_cap(
    amount: Decimal,
    available_balance: Decimal,
    leverage: Optional[int],
    price: Decimal,
    lot_size: Decimal,
) -> Decimal:
    """Clamp to ``balance * leverage / price`` and re-quantize."""
    if not leverage:
        return amount
    max_amount = (available_balance * Decimal(leverage)) / price
    return quantize_down(min(amount, max_amount), lot_size)


def _first_present(position: Dict[str, Any], keys: Iterable[str]) -> Decimal:
    for key in keys:
        value = safe_decimal(position.get(key))
        if value:
            return value
    return ZERO


def position_notional(position: Dict[str, Any]) -> Decimal:
    """Absolute USD notional of one open position."""
    amount = _first_present(position, _AMOUNT_KEYS)
    price = _first_present(position, _PRICE_KEYS)
    return abs(amount * price)


def total_exposure(positions: Iterable[Dict[str, Any]]) -> Decimal:
    """Sum of open-position notionals."""
    return sum((position_notional(p) for p in positions if isinstance(p, dict)), ZERO)


def exceeds_exposure(current: Decimal, new_notional: Decimal, limit: Optional[Decimal]) -> bool:
    if not limit:
        return False
    return current + new_notional > limit
