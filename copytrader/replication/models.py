"""
Data models for trade replication.

Fills arrive from the feed, relationships come from the store and every
relationship yields one ReplicationResult per fill.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from ..common.types import (
    FeedEventKind,
    OrderSide,
    ReplicationStatus,
    SizingMethod,
    SkipReason,
    TradeSide,
)
from ..common.utils import normalize_symbol

# Valid sizing_value range per method (upper bound None = unbounded)
SIZING_LIMITS: Dict[SizingMethod, Tuple[Decimal, Optional[Decimal]]] = {
    SizingMethod.MULTIPLIER: (Decimal("0.01"), Decimal("2.0")),
    SizingMethod.FIXED_USD: (Decimal("10"), None),
    SizingMethod.BALANCE_PERCENT: (Decimal("1"), Decimal("100")),
}

# Precision of the stored DECIMAL columns
DECIMAL_DIGITS = 38
DECIMAL_PLACES = 10


@dataclass(frozen=True)
class Fill:
    """One executed master trade accepted from the feed."""
    master_wallet: str
    symbol: str
    trade_side: TradeSide
    amount: Decimal
    price: Decimal
    event_kind: FeedEventKind = FeedEventKind.FULFILL_TAKER
    received_at: float = field(default_factory=time.time)

    @property
    def order_side(self) -> OrderSide:
        return self.trade_side.order_side

    @property
    def reduce_only(self) -> bool:
        return self.trade_side.reduce_only

    @property
    def notional(self) -> Decimal:
        return self.amount * self.price


class CopyRelationship(BaseModel):
    """A copier account following one master wallet with its sizing and risk rules."""

    id: Optional[int] = None
    user_wallet: str = Field(..., min_length=1)
    master_wallet: str = Field(..., min_length=1)
    encrypted_api_key: str = Field(..., min_length=1)

    # Sizing
    sizing_method: SizingMethod = SizingMethod.MULTIPLIER
    sizing_value: Decimal = Field(
        default=Decimal("0.5"), max_digits=DECIMAL_DIGITS, decimal_places=DECIMAL_PLACES
    )

    # Risk controls (unset or zero = not configured)
    max_position_cap: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=DECIMAL_DIGITS, decimal_places=DECIMAL_PLACES
    )
    symbols: List[str] = Field(default_factory=list)
    custom_leverage: Optional[int] = Field(default=None, ge=1, le=50)
    max_total_exposure: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=DECIMAL_DIGITS, decimal_places=DECIMAL_PLACES
    )
    symbol_multipliers: Optional[Dict[str, Decimal]] = None

    is_active: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("symbols", mode="before")
    @classmethod
    def normalize_symbols(cls, v):
        if v is None:
            return []
        normalized = []
        for symbol in v:
            symbol = normalize_symbol(symbol)
            if symbol and symbol not in normalized:
                normalized.append(symbol)
        return normalized

    @field_validator("custom_leverage", mode="before")
    @classmethod
    def zero_leverage_is_unset(cls, v):
        if v in (0, "0"):
            return None
        return v

    @field_validator("symbol_multipliers")
    @classmethod
    def validate_symbol_multipliers(cls, v):
        if not v:
            return None
        normalized = {}
        for symbol, multiplier in v.items():
            if multiplier <= 0:
                raise ValueError(f"Multiplier for {symbol} must be positive")
            normalized[normalize_symbol(symbol)] = multiplier
        return normalized

    @model_validator(mode="after")
    def validate_sizing_value(self):
        low, high = SIZING_LIMITS[self.sizing_method]
        if self.sizing_value < low or (high is not None and self.sizing_value > high):
            upper = f"{high}" if high is not None else "inf"
            raise ValueError(
                f"sizing_value {self.sizing_value} out of range [{low}, {upper}] "
                f"for {self.sizing_method.value}"
            )
        return self

    def allows_symbol(self, symbol: str) -> bool:
        """An empty allow-list means every symbol is copied."""
        return not self.symbols or normalize_symbol(symbol) in self.symbols

    def symbol_multiplier(self, symbol: str) -> Optional[Decimal]:
        if not self.symbol_multipliers:
            return None
        return self.symbol_multipliers.get(normalize_symbol(symbol))

    @property
    def position_cap(self) -> Optional[Decimal]:
        return self.max_position_cap or None

    @property
    def leverage_cap(self) -> Optional[int]:
        return self.custom_leverage or None

    @property
    def exposure_limit(self) -> Optional[Decimal]:
        return self.max_total_exposure or None


@dataclass
class ReplicationResult:
    """Outcome of one relationship for one fill."""
    relationship_id: Optional[int]
    user_wallet: str
    symbol: str
    status: ReplicationStatus
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    amount: Optional[str] = None
    side: Optional[OrderSide] = None
    reduce_only: bool = False
    response: Any = None

    @classmethod
    def skipped(cls, relationship: CopyRelationship, symbol: str, reason: SkipReason) -> "ReplicationResult":
        return cls(
            relationship_id=relationship.id,
            user_wallet=relationship.user_wallet,
            symbol=symbol,
            status=ReplicationStatus.SKIPPED,
            reason=reason,
        )

    @classmethod
    def failed(cls, relationship: CopyRelationship, symbol: str, error: str) -> "ReplicationResult":
        return cls(
            relationship_id=relationship.id,
            user_wallet=relationship.user_wallet,
            symbol=symbol,
            status=ReplicationStatus.FAILED,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relationship_id": self.relationship_id,
            "user_wallet": self.user_wallet,
            "symbol": self.symbol,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "amount": self.amount,
            "side": self.side.value if self.side else None,
            "reduce_only": self.reduce_only,
        }
