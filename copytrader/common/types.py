"""
Common type definitions for the copy-trading engine.
"""

from enum import Enum
from typing import Any, Dict, List

# Wire payloads
JSONDict = Dict[str, Any]
PositionList = List[JSONDict]


class TradeSide(str, Enum):
    """Trade side tag reported by the feed for a fill."""
    OPEN_LONG = "open_long"
    CLOSE_LONG = "close_long"
    OPEN_SHORT = "open_short"
    CLOSE_SHORT = "close_short"

    @property
    def order_side(self) -> "OrderSide":
        """Side of the order that reproduces this trade."""
        if self in (TradeSide.OPEN_LONG, TradeSide.CLOSE_SHORT):
            return OrderSide.BID
        return OrderSide.ASK

    @property
    def reduce_only(self) -> bool:
        """Closing trades only ever shrink a position."""
        return "close" in self.value


class OrderSide(str, Enum):
    """Exchange order side."""
    BID = "bid"
    ASK = "ask"


class FeedEventKind(str, Enum):
    """Fill event kinds forwarded to replication."""
    FULFILL_MAKER = "fulfill_maker"
    FULFILL_TAKER = "fulfill_taker"


class SizingMethod(str, Enum):
    """How a copier order amount is derived from a master fill."""
    MULTIPLIER = "multiplier"
    FIXED_USD = "fixed_usd"
    BALANCE_PERCENT = "balance_percent"


class FeedState(str, Enum):
    """Feed session states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why a relationship did not produce an order for a fill."""
    SYMBOL_FILTERED = "symbol_filtered"
    DECRYPTION_FAILED = "decryption_failed"
    BELOW_LOT_SIZE = "below_lot_size"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BELOW_LOT_AFTER_LEVERAGE = "below_lot_after_leverage"
    EXPOSURE_LIMIT = "exposure_limit"


class ReplicationStatus(str, Enum):
    """Outcome of one relationship for one fill."""
    SUBMITTED = "submitted"
    SKIPPED = "skipped"
    FAILED = "failed"
