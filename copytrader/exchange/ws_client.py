"""
Pacifica trade feed subscriber.

One websocket session multiplexes ``account_trades`` subscriptions for every
master wallet. Fill records are normalized and handed to registered handlers
in delivery order.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..common.config import PacificaConfig, settings
from ..common.exceptions import FeedFatalError
from ..common.logging import get_logger, short_wallet
from ..common.monitoring import (
    ERRORS_TOTAL,
    FEED_CONNECTED,
    FEED_RECONNECTS,
    FEED_SUBSCRIPTIONS,
    FILLS_RECEIVED,
    MESSAGES_RECEIVED,
    increment_counter,
    set_gauge,
)
from ..common.types import FeedEventKind, FeedState, TradeSide
from ..common.utils import safe_decimal
from ..replication.models import Fill

logger = get_logger(__name__)

TRADES_CHANNEL = "account_trades"
FILL_EVENT_KINDS = {kind.value for kind in FeedEventKind}

FillHandler = Callable[[Fill], Awaitable[None]]
ConnectedHandler = Callable[[], Awaitable[None]]


def reconnect_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Backoff before reconnect ``attempt`` (1-based): 1, 2, 4, ... units."""
    return base_delay * (2 ** (attempt - 1))


def parse_fill(record: Any, received_at: Optional[float] = None) -> Optional[Fill]:
    """
    Normalize one ``account_trades`` record.

    Returns None for non-fill events and for malformed records.
    """
    if not isinstance(record, dict):
        logger.warning("Ignoring non-object trade record", record=str(record)[:200])
        return None

    event_kind = record.get("te")
    if not isinstance(event_kind, str) or event_kind not in FILL_EVENT_KINDS:
        return None

    wallet = record.get("u")
    symbol = record.get("s")
    amount = safe_decimal(record.get("a"))
    price = safe_decimal(record.get("p"))

    try:
        trade_side = TradeSide(record.get("ts"))
    except ValueError:
        trade_side = None

    if not wallet or not symbol or trade_side is None \
            or amount <= 0 or price <= 0:
        logger.warning("Malformed fill record", record=str(record)[:200])
        increment_counter(ERRORS_TOTAL, component="feed", error_type="malformed_fill")
        return None

    return Fill(
        master_wallet=str(wallet),
        symbol=str(symbol),
        trade_side=trade_side,
        amount=amount,
        price=price,
        event_kind=FeedEventKind(event_kind),
        received_at=received_at if received_at is not None else time.time(),
    )


class PacificaWebSocketClient:
    """
    Persistent feed session with subscription replay and bounded reconnection.

    State machine: disconnected -> connecting -> connected -> disconnected ...
    and finally failed once reconnection gives up.
    """

    def __init__(
        self,
        ws_url: Optional[str] = None,
        config: Optional[PacificaConfig] = None,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or settings.pacifica
        self.ws_url = ws_url or settings.get_pacifica_urls()["websocket"]

        self._connect = connect
        self._sleep = sleep

        self.websocket = None
        self.state = FeedState.DISCONNECTED
        self.subscriptions: Set[str] = set()
        self.reconnect_attempts = 0

        self._running = False
        self._fill_handlers: List[FillHandler] = []
        self._connected_handlers: List[ConnectedHandler] = []

    @property
    def is_connected(self) -> bool:
        return self.state == FeedState.CONNECTED and self.websocket is not None

    def on_fill(self, handler: FillHandler) -> None:
        """Register a coroutine called once per accepted fill."""
        self._fill_handlers.append(handler)

    def on_connected(self, handler: ConnectedHandler) -> None:
        """Register a coroutine called after every successful (re)connect."""
        self._connected_handlers.append(handler)

    async def run(self) -> None:
        """
        Connect and keep the session alive until :meth:`stop`.

        Raises:
            FeedFatalError: reconnection attempts exhausted
        """
        self._running = True
        logger.info("Starting trade feed", url=self.ws_url)

        while self._running:
            try:
                await self._connect_and_run()
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Feed connection error: {e}")
            except Exception as e:
                logger.error("Feed connection failed", exception=e)
                increment_counter(ERRORS_TOTAL, component="feed", error_type=type(e).__name__)

            self._set_state(FeedState.DISCONNECTED)
            if not self._running:
                break

            self.reconnect_attempts += 1
            increment_counter(FEED_RECONNECTS)

            max_attempts = self.config.max_reconnect_attempts
            if self.reconnect_attempts > max_attempts:
                self._running = False
                self._set_state(FeedState.FAILED)
                logger.error(f"Max reconnect attempts ({max_attempts}) reached, giving up")
                raise FeedFatalError(
                    f"Trade feed failed after {max_attempts} reconnect attempts",
                    context={"url": self.ws_url},
                )

            wait_time = reconnect_delay(self.reconnect_attempts, self.config.reconnect_base_delay)
            logger.info(f"Reconnecting in {wait_time}s (attempt {self.reconnect_attempts})")
            await self._sleep(wait_time)

    async def stop(self) -> None:
        """Close the session without triggering reconnection."""
        logger.info("Stopping trade feed")
        self._running = False

        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()

        if self.state != FeedState.FAILED:
            self._set_state(FeedState.DISCONNECTED)

    async def _connect_and_run(self) -> None:
        """Open one session, replay subscriptions and pump messages until it closes."""
        self._set_state(FeedState.CONNECTING)

        websocket = await asyncio.wait_for(
            self._connect(
                self.ws_url,
                ping_interval=None,
                max_size=1024 * 1024 * 10,
                close_timeout=10,
            ),
            timeout=self.config.connection_timeout,
        )
        if not self._running:
            await websocket.close()
            return

        self.websocket = websocket
        self.reconnect_attempts = 0
        self._set_state(FeedState.CONNECTED)
        logger.info("Trade feed connected", subscriptions=len(self.subscriptions))

        await self._replay_subscriptions()
        await self._notify_connected()

        tasks = [
            asyncio.create_task(self._message_receiver(websocket)),
            asyncio.create_task(self._heartbeat()),
        ]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
        finally:
            for task in tasks:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if self.websocket is websocket:
                self.websocket = None
                await websocket.close()

    async def _replay_subscriptions(self) -> None:
        for wallet in sorted(self.subscriptions):
            await self._send(self._subscription_message("subscribe", wallet))

    async def _notify_connected(self) -> None:
        for handler in self._connected_handlers:
            try:
                await handler()
            except Exception as e:
                logger.error("Connected handler failed", exception=e)
                increment_counter(ERRORS_TOTAL, component="feed", error_type=type(e).__name__)

    async def _message_receiver(self, websocket) -> None:
        """Receive messages until the session closes."""
        try:
            async for message in websocket:
                await self.handle_message(message)
        except ConnectionClosed:
            logger.warning("Feed connection closed")
            raise

    async def _heartbeat(self) -> None:
        """Send application-level pings while the session is live."""
        while self._running:
            await asyncio.sleep(self.config.ping_interval)
            if not await self._send({"method": "ping"}):
                return

    async def subscribe(self, wallet: str) -> None:
        """Add a master wallet; the command is sent only while connected."""
        if wallet in self.subscriptions:
            return
        self.subscriptions.add(wallet)
        set_gauge(FEED_SUBSCRIPTIONS, len(self.subscriptions))
        logger.info("Subscribing to master", wallet=short_wallet(wallet), live=self.is_connected)
        await self._send(self._subscription_message("subscribe", wallet))

    async def unsubscribe(self, wallet: str) -> None:
        """Remove a master wallet; the command is sent only while connected."""
        if wallet not in self.subscriptions:
            return
        self.subscriptions.discard(wallet)
        set_gauge(FEED_SUBSCRIPTIONS, len(self.subscriptions))
        logger.info("Unsubscribing from master", wallet=short_wallet(wallet), live=self.is_connected)
        await self._send(self._subscription_message("unsubscribe", wallet))

    @staticmethod
    def _subscription_message(method: str, wallet: str) -> dict:
        return {"method": method, "params": {"source": TRADES_CHANNEL, "account": wallet}}

    async def _send(self, message: dict) -> bool:
        """Send a control message if live. Offline messages are dropped, not queued."""
        if not self.is_connected:
            return False
        try:
            await self.websocket.send(json.dumps(message))
            return True
        except ConnectionClosed as e:
            logger.warning(f"Send failed, connection closed: {e}")
            return False

    async def handle_message(self, raw: Any) -> List[Fill]:
        """
        Process one inbound frame and dispatch its fills.

        Control frames (pong, acks) and non-fill trade events are ignored.
        Returns the fills that were dispatched.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Invalid JSON received: {e}")
            increment_counter(ERRORS_TOTAL, component="feed", error_type="json_decode")
            return []

        if not isinstance(data, dict):
            return []

        channel = data.get("channel")
        increment_counter(MESSAGES_RECEIVED, channel=str(channel or "none"))
        if channel != TRADES_CHANNEL:
            return []

        records = data.get("data") or []
        if isinstance(records, dict):
            records = [records]
        if not isinstance(records, list):
            logger.warning("Ignoring trade frame without a record list", data=str(records)[:200])
            increment_counter(ERRORS_TOTAL, component="feed", error_type="malformed_frame")
            return []

        received_at = time.time()
        fills = []
        for record in records:
            try:
                fill = parse_fill(record, received_at)
            except Exception as e:
                logger.warning("Malformed fill record", record=str(record)[:200], exception=e)
                increment_counter(ERRORS_TOTAL, component="feed", error_type="malformed_fill")
                continue
            if fill is None:
                continue

            increment_counter(FILLS_RECEIVED, symbol=fill.symbol, event_kind=fill.event_kind.value)
            await self._dispatch_fill(fill)
            fills.append(fill)
        return fills

    async def _dispatch_fill(self, fill: Fill) -> None:
        for handler in self._fill_handlers:
            try:
                await handler(fill)
            except Exception as e:
                logger.error("Fill handler failed", exception=e, master=short_wallet(fill.master_wallet))
                increment_counter(ERRORS_TOTAL, component="feed", error_type=type(e).__name__)

    def _set_state(self, state: FeedState) -> None:
        self.state = state
        set_gauge(FEED_CONNECTED, 1 if state == FeedState.CONNECTED else 0)
