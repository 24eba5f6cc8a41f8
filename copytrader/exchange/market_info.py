"""Per-symbol market metadata used to quantize copy orders."""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..common.logging import get_logger
from ..common.monitoring import ERRORS_TOTAL, increment_counter
from ..common.utils import normalize_symbol, safe_decimal

logger = get_logger(__name__)

MarketsFetcher = Callable[[], Awaitable[List[Dict[str, Any]]]]


@dataclass(frozen=True)
class MarketInfo:
    """Trading constraints for one symbol."""
    symbol: str
    lot_size: Decimal
    tick_size: Optional[Decimal] = None
    max_leverage: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> Optional["MarketInfo"]:
        """Build from one ``/info`` entry; None when unusable."""
        symbol = normalize_symbol(data.get("symbol"))
        lot_size = safe_decimal(data.get("lot_size"))
        if not symbol or lot_size <= 0:
            return None

        tick_size = safe_decimal(data.get("tick_size"))
        max_leverage = data.get("max_leverage")
        try:
            max_leverage = int(max_leverage) if max_leverage is not None else None
        except (TypeError, ValueError):
            max_leverage = None

        return cls(
            symbol=symbol,
            lot_size=lot_size,
            tick_size=tick_size if tick_size > 0 else None,
            max_leverage=max_leverage,
        )


class MarketInfoCache:
    """
    Lazily populated symbol -> MarketInfo map.

    Entries are never invalidated. A lookup miss refetches the market list,
    and a failed or incomplete fetch falls back to ``default_lot_size``.
    """

    def __init__(self, fetch_markets: MarketsFetcher, default_lot_size: Decimal):
        self._fetch_markets = fetch_markets
        self.default_lot_size = default_lot_size
        self._markets: Dict[str, MarketInfo] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, symbol: str) -> bool:
        return normalize_symbol(symbol) in self._markets

    def __len__(self) -> int:
        return len(self._markets)

    async def get(self, symbol: str) -> Optional[MarketInfo]:
        """Get-or-populate metadata for a symbol (best-effort)."""
        symbol = normalize_symbol(symbol)
        market = self._markets.get(symbol)
        if market is not None:
            return market

        async with self._lock:
            market = self._markets.get(symbol)
            if market is not None:
                return market

            try:
                entries = await self._fetch_markets()
            except Exception as e:
                logger.warning("Failed to fetch market info", symbol=symbol, exception=e)
                increment_counter(ERRORS_TOTAL, component="market_info", error_type=type(e).__name__)
                return None

            for entry in entries or []:
                if not isinstance(entry, dict):
                    continue
                info = MarketInfo.from_api(entry)
                if info is not None:
                    self._markets[info.symbol] = info

            logger.info("Market info loaded", markets=len(self._markets))
            return self._markets.get(symbol)

    async def lot_size_for(self, symbol: str) -> Decimal:
        """Lot size for a symbol, or the default when unknown."""
        market = await self.get(symbol)
        if market is None:
            logger.warning(
                "No market info, using default lot size",
                symbol=normalize_symbol(symbol),
                lot_size=str(self.default_lot_size),
            )
            return self.default_lot_size
        return market.lot_size
