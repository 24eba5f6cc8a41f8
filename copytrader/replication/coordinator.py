"""
Replication coordinator.

Turns each master fill into copy orders for every active relationship:
- fills are queued per master wallet and replayed in feed order
- relationships for one fill are processed concurrently and in isolation
- the feed's subscription set follows the active relationships
"""

import asyncio
import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union

from ..common.config import ReplicationConfig, settings
from ..common.exceptions import DecryptionError
from ..common.logging import ReplicationLogger, get_logger, short_wallet
from ..common.monitoring import (
    ERRORS_TOTAL,
    ORDERS_SUBMITTED,
    REPLICATION_LATENCY,
    REPLICATION_SKIPS,
    REPLICATIONS_TOTAL,
    increment_counter,
    measure_time,
    observe_histogram,
)
from ..common.types import ReplicationStatus, SizingMethod, SkipReason
from ..common.utils import format_amount, normalize_symbol, quantize_down
from ..exchange.market_info import MarketInfoCache
from ..exchange.rest_client import RESTClientPool
from ..exchange.ws_client import PacificaWebSocketClient
from .models import CopyRelationship, Fill, ReplicationResult
from .sizing import (
    apply_leverage_cap,
    apply_position_cap,
    apply_symbol_multiplier,
    base_amount,
    exceeds_exposure,
    total_exposure,
)
from .store import RelationshipStore

logger = get_logger(__name__)
replication_logger = ReplicationLogger(__name__)

Decryptor = Callable[[str], str]


class ReplicationCoordinator:
    """Fans master fills out to copier accounts."""

    def __init__(
        self,
        store: RelationshipStore,
        feed: PacificaWebSocketClient,
        decrypt: Decryptor,
        market_info: MarketInfoCache,
        client_pool: RESTClientPool,
        config: Optional[ReplicationConfig] = None,
    ):
        self.store = store
        self.feed = feed
        self.decrypt = decrypt
        self.market_info = market_info
        self.client_pool = client_pool
        self.config = config or settings.replication

        self._channels: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._failure_counts: Dict[Union[int, str], int] = {}

        self._accepting = False
        self._reconcile_task: Optional[asyncio.Task] = None
        self._reconcile_lock = asyncio.Lock()

    async def start(self) -> None:
        """Accept fills and start periodic subscription reconciliation."""
        if self._accepting:
            return
        self._accepting = True
        await self.reconcile_subscriptions()
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info("Replication coordinator started")

    async def stop(self) -> None:
        """Stop accepting fills, drain queued ones, then release copier clients."""
        self._accepting = False

        if self._reconcile_task:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        for master_wallet, channel in list(self._channels.items()):
            if channel.qsize():
                logger.info("Draining fills", master=short_wallet(master_wallet), pending=channel.qsize())
            await channel.join()

        for worker in self._workers.values():
            worker.cancel()
        for worker in self._workers.values():
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._channels.clear()

        await self.client_pool.close_all()
        logger.info("Replication coordinator stopped")

    # Fill intake

    async def handle_fill(self, fill: Fill) -> None:
        """Queue a fill on its master's channel (feed handler)."""
        if not self._accepting:
            logger.warning("Dropping fill, coordinator not accepting", master=short_wallet(fill.master_wallet))
            return

        channel = self._channels.get(fill.master_wallet)
        if channel is None:
            channel = asyncio.Queue(maxsize=self.config.channel_size)
            self._channels[fill.master_wallet] = channel
            self._workers[fill.master_wallet] = asyncio.create_task(
                self._channel_worker(fill.master_wallet, channel)
            )

        await channel.put(fill)

    async def _channel_worker(self, master_wallet: str, channel: asyncio.Queue) -> None:
        """Replicate one master's fills sequentially."""
        while True:
            fill = await channel.get()
            try:
                await self.process_fill(fill)
            except Exception as e:
                logger.error("Fill processing failed", master=short_wallet(master_wallet), exception=e)
                increment_counter(ERRORS_TOTAL, component="coordinator", error_type=type(e).__name__)
            finally:
                channel.task_done()

    async def process_fill(self, fill: Fill) -> List[ReplicationResult]:
        """Replicate one fill to every active relationship of its master."""
        symbol = normalize_symbol(fill.symbol)
        replication_logger.log_fill(
            fill.master_wallet,
            symbol,
            fill.trade_side.value,
            fill.amount,
            fill.price,
            event_kind=fill.event_kind.value,
        )

        lot_size = await self.market_info.lot_size_for(symbol)

        try:
            relationships = await self.store.list_active_by_master(fill.master_wallet)
        except Exception as e:
            logger.error("Failed to load relationships", master=short_wallet(fill.master_wallet), exception=e)
            increment_counter(ERRORS_TOTAL, component="coordinator", error_type=type(e).__name__)
            return []

        if not relationships:
            logger.info("No active copiers for this master", master=short_wallet(fill.master_wallet))
            return []

        logger.info(f"Replicating to {len(relationships)} copier(s)", symbol=symbol)

        async with measure_time("replication"):
            results = await asyncio.gather(*(
                self.replicate_to_copier(relationship, fill, symbol, lot_size)
                for relationship in relationships
            ))

        observe_histogram(REPLICATION_LATENCY, max(0.0, time.time() - fill.received_at))
        return list(results)

    # Per-relationship pipeline

    async def replicate_to_copier(
        self,
        relationship: CopyRelationship,
        fill: Fill,
        symbol: str,
        lot_size: Decimal,
    ) -> ReplicationResult:
        """Size, check and submit one copy order. Never raises."""
        try:
            result = await self._replicate(relationship, fill, symbol, lot_size)
        except Exception as e:
            replication_logger.log_error(
                type(e).__name__,
                f"Replication failed for {short_wallet(relationship.user_wallet)}",
                exception=e,
                relationship_id=relationship.id,
            )
            increment_counter(ERRORS_TOTAL, component="coordinator", error_type=type(e).__name__)
            result = ReplicationResult.failed(relationship, symbol, str(e))

        self._record(relationship, result)
        return result

    async def _replicate(
        self,
        relationship: CopyRelationship,
        fill: Fill,
        symbol: str,
        lot_size: Decimal,
    ) -> ReplicationResult:
        wallet = relationship.user_wallet

        if not relationship.allows_symbol(symbol):
            return self._skip(relationship, symbol, SkipReason.SYMBOL_FILTERED)

        try:
            private_key = self.decrypt(relationship.encrypted_api_key)
        except DecryptionError as e:
            return self._skip(relationship, symbol, SkipReason.DECRYPTION_FAILED, error=e.message)

        client = await self.client_pool.get(wallet, private_key)

        balance: Optional[Decimal] = None
        if relationship.sizing_method == SizingMethod.BALANCE_PERCENT:
            balance = await client.get_available_balance(wallet)

        amount = base_amount(
            relationship.sizing_method,
            relationship.sizing_value,
            fill.amount,
            fill.price,
            available_balance=balance,
        )
        amount = apply_symbol_multiplier(amount, relationship.symbol_multiplier(symbol))
        amount = apply_position_cap(amount, fill.price, relationship.position_cap)
        amount = quantize_down(amount, lot_size)
        if amount <= 0:
            return self._skip(relationship, symbol, SkipReason.BELOW_LOT_SIZE, lot_size=str(lot_size))

        if balance is None:
            balance = await client.get_available_balance(wallet)

        if relationship.leverage_cap:
            previous = amount
            amount = apply_leverage_cap(amount, balance, relationship.leverage_cap, fill.price, lot_size)
            if amount < previous:
                logger.info(
                    f"Applied {relationship.leverage_cap}x leverage limit",
                    copier=short_wallet(wallet),
                    before=format_amount(previous),
                    after=format_amount(amount),
                )
            if amount <= 0:
                return self._skip(relationship, symbol, SkipReason.BELOW_LOT_AFTER_LEVERAGE)

        notional = amount * fill.price
        if notional > balance:
            return self._skip(
                relationship,
                symbol,
                SkipReason.INSUFFICIENT_BALANCE,
                need=str(notional),
                have=str(balance),
            )

        if relationship.exposure_limit:
            positions = await client.get_positions(wallet)
            current = total_exposure(positions)
            if exceeds_exposure(current, notional, relationship.exposure_limit):
                return self._skip(
                    relationship,
                    symbol,
                    SkipReason.EXPOSURE_LIMIT,
                    current=str(current),
                    new=str(notional),
                    limit=str(relationship.exposure_limit),
                )

        side = fill.order_side
        reduce_only = fill.reduce_only
        amount_text = format_amount(amount)

        response = await client.create_market_order(
            symbol=symbol,
            amount=amount_text,
            side=side,
            slippage_percent=self.config.slippage_percent,
            reduce_only=reduce_only,
        )

        replication_logger.log_order(
            wallet,
            symbol,
            side.value,
            amount_text,
            fill.price,
            reduce_only,
            relationship_id=relationship.id,
        )
        increment_counter(ORDERS_SUBMITTED, symbol=symbol, side=side.value)

        return ReplicationResult(
            relationship_id=relationship.id,
            user_wallet=wallet,
            symbol=symbol,
            status=ReplicationStatus.SUBMITTED,
            amount=amount_text,
            side=side,
            reduce_only=reduce_only,
            response=response,
        )

    @staticmethod
    def _skip(
        relationship: CopyRelationship,
        symbol: str,
        reason: SkipReason,
        **context: str,
    ) -> ReplicationResult:
        replication_logger.log_skip(relationship.user_wallet, reason.value, symbol=symbol, **context)
        return ReplicationResult.skipped(relationship, symbol, reason)

    def _record(self, relationship: CopyRelationship, result: ReplicationResult) -> None:
        """Update outcome metrics and consecutive-failure tracking."""
        increment_counter(REPLICATIONS_TOTAL, status=result.status.value)
        if result.reason is not None:
            increment_counter(REPLICATION_SKIPS, reason=result.reason.value)

        key = relationship.id if relationship.id is not None else relationship.user_wallet
        if result.status == ReplicationStatus.SUBMITTED:
            self._failure_counts.pop(key, None)
        elif result.status == ReplicationStatus.FAILED:
            count = self._failure_counts.get(key, 0) + 1
            self._failure_counts[key] = count
            if count >= self.config.failure_warning_threshold:
                logger.warning(
                    f"Relationship failed {count} times in a row",
                    relationship_id=relationship.id,
                    copier=short_wallet(relationship.user_wallet),
                    master=short_wallet(relationship.master_wallet),
                )

    def consecutive_failures(self, relationship: CopyRelationship) -> int:
        key = relationship.id if relationship.id is not None else relationship.user_wallet
        return self._failure_counts.get(key, 0)

    # Subscription reconciliation

    async def reconcile_subscriptions(self) -> None:
        """Align the feed's subscription set with the active master wallets."""
        async with self._reconcile_lock:
            try:
                desired = await self.store.list_active_master_wallets()
            except Exception as e:
                logger.error("Failed to load active masters", exception=e)
                increment_counter(ERRORS_TOTAL, component="coordinator", error_type=type(e).__name__)
                return

            current = set(self.feed.subscriptions)
            added = sorted(desired - current)
            removed = sorted(current - desired)

            for wallet in added:
                await self.feed.subscribe(wallet)
            for wallet in removed:
                await self.feed.unsubscribe(wallet)

            if added or removed:
                logger.info(
                    "Subscriptions reconciled",
                    added=len(added),
                    removed=len(removed),
                    total=len(self.feed.subscriptions),
                )

    async def notify_relationships_changed(self, action: str, relationship: CopyRelationship) -> None:
        """Store listener: reconcile right after any relationship mutation."""
        logger.debug("Relationship changed", action=action, relationship_id=relationship.id)
        await self.reconcile_subscriptions()

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reconcile_interval)
            await self.reconcile_subscriptions()
