"""Pacifica REST client with signed writes and a rate-limited dispatch queue."""

import asyncio
import hashlib
import json
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import aiohttp

from ..common.config import PacificaConfig, settings
from ..common.exceptions import APIError, AuthError, RateLimitError, TransportError
from ..common.logging import get_logger, short_wallet
from ..common.monitoring import (
    RATE_LIMIT_HITS,
    REST_QUEUE_DEPTH,
    REST_REQUESTS,
    increment_counter,
    set_gauge,
)
from ..common.types import JSONDict, OrderSide, PositionList
from ..common.utils import safe_decimal
from .signing import AgentSigner

logger = get_logger(__name__)


class RequestBudget:
    """
    Fixed-window dispatch budget.

    The counter is reset by a tick, not a sliding window: at most ``limit``
    dispatches are accepted between two consecutive resets.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def acquire(self) -> bool:
        """Consume one slot if available."""
        if self.used >= self.limit:
            return False
        self.used += 1
        return True

    def reset(self) -> None:
        self.used = 0


@dataclass
class QueuedRequest:
    """One HTTP call waiting for the dispatcher."""

    method: str
    url: str
    future: asyncio.Future
    params: Optional[Dict[str, str]] = None
    body: Optional[JSONDict] = None
    retry_count: int = 0


class RetryFirstQueue:
    """FIFO of pending requests where re-queued retries are served before fresh work."""

    def __init__(self):
        self._retries: Deque[QueuedRequest] = deque()
        self._pending: Deque[QueuedRequest] = deque()

    def push(self, request: QueuedRequest) -> None:
        self._pending.append(request)

    def push_retry(self, request: QueuedRequest) -> None:
        self._retries.append(request)

    def pop(self) -> Optional[QueuedRequest]:
        if self._retries:
            return self._retries.popleft()
        if self._pending:
            return self._pending.popleft()
        return None

    def drain(self) -> List[QueuedRequest]:
        """Remove and return everything still queued, retries first."""
        items = list(self._retries) + list(self._pending)
        self._retries.clear()
        self._pending.clear()
        return items

    def __len__(self) -> int:
        return len(self._retries) + len(self._pending)


class PacificaRESTClient:
    """
    Pacifica REST API client.

    All calls go through one dispatcher task that drains a retry-first queue
    under a fixed-window budget:
    - HTTP 429 is retried once, ahead of queued work, after a short delay
    - any other non-2xx rejects immediately with the status and body
    - reads are unsigned; writes are signed with the account's agent key
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        account: Optional[str] = None,
        private_key: Optional[str] = None,
        config: Optional[PacificaConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or settings.pacifica
        self.api_url = (api_url or settings.get_pacifica_urls()["rest"]).rstrip("/")
        self.account = account
        self.signer = AgentSigner(account, private_key) if private_key else None

        # Rate limiting
        self.budget = RequestBudget(self.config.requests_per_window)
        self.queue = RetryFirstQueue()

        # Session management
        self.session = session
        self._owns_session = False

        self._running = False
        self._tasks: List[asyncio.Task] = []

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def requires_auth(self) -> bool:
        return self.signer is not None

    async def start(self) -> None:
        """Open the HTTP session and start the dispatcher."""
        if self._running:
            return

        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                connector=aiohttp.TCPConnector(limit=20, keepalive_timeout=60),
            )
            self._owns_session = True

        self._running = True
        self._tasks = [
            asyncio.create_task(self._dispatch_loop()),
            asyncio.create_task(self._budget_reset_loop()),
        ]
        logger.debug(
            "REST client started",
            api_url=self.api_url,
            account=short_wallet(self.account),
            authenticated=self.requires_auth,
        )

    async def close(self) -> None:
        """Stop the dispatcher, reject queued requests and close the session."""
        self._running = False

        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        for request in self.queue.drain():
            self._reject(request, TransportError("REST client closed"))
        set_gauge(REST_QUEUE_DEPTH, 0)

        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    def enqueue(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[JSONDict] = None,
    ) -> asyncio.Future:
        """
        Queue a request for the dispatcher.

        Never raises: failures, including a stopped client, are delivered
        through the returned future.
        """
        future = asyncio.get_running_loop().create_future()

        if not self._running:
            future.set_exception(TransportError("REST client is not running"))
            return future

        self.queue.push(QueuedRequest(
            method=method,
            url=f"{self.api_url}{path}",
            future=future,
            params=params,
            body=body,
        ))
        set_gauge(REST_QUEUE_DEPTH, len(self.queue))
        return future

    async def _dispatch_loop(self) -> None:
        """Drain the queue within the rate budget, polling when idle."""
        while self._running:
            if not self.queue or self.budget.remaining <= 0:
                await asyncio.sleep(self.config.queue_poll_interval)
                continue

            request = self.queue.pop()
            set_gauge(REST_QUEUE_DEPTH, len(self.queue))
            if request is None or request.future.done():
                # Caller gave up on it
                continue

            self.budget.acquire()
            await self._dispatch(request)

    async def _budget_reset_loop(self) -> None:
        """Reset the request budget on every window tick."""
        while self._running:
            await asyncio.sleep(self.config.rate_window_seconds)
            self.budget.reset()

    async def _dispatch(self, request: QueuedRequest) -> None:
        """Send one request and settle its future."""
        try:
            status, text = await self._send(request)
        except asyncio.CancelledError:
            self._reject(request, TransportError("REST client closed"))
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            increment_counter(REST_REQUESTS, method=request.method, status="transport_error")
            self._reject(request, TransportError(
                f"{request.method} {request.url} failed: {e}",
                context={"error_type": type(e).__name__},
            ))
            return

        increment_counter(REST_REQUESTS, method=request.method, status=str(status))

        if status == 429:
            if request.retry_count < self.config.rate_limit_retries:
                request.retry_count += 1
                increment_counter(RATE_LIMIT_HITS, outcome="retry")
                logger.warning("Rate limited, retrying", url=request.url, attempt=request.retry_count)
                await asyncio.sleep(self.config.rate_limit_retry_delay)
                self.queue.push_retry(request)
            else:
                increment_counter(RATE_LIMIT_HITS, outcome="rejected")
                self._reject(request, RateLimitError(
                    "Rate limit exceeded after retry",
                    status_code=status,
                    response_data=text,
                ))
            return

        if not 200 <= status < 300:
            self._reject(request, APIError(
                f"HTTP {status}: {text}",
                status_code=status,
                response_data=text,
            ))
            return

        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            self._reject(request, APIError(
                f"Invalid JSON response: {e}",
                status_code=status,
                response_data=text,
            ))
            return

        if not request.future.done():
            request.future.set_result(data)

    async def _send(self, request: QueuedRequest) -> Tuple[int, str]:
        """Perform the HTTP call, returning status and raw body."""
        async with self.session.request(
            request.method,
            request.url,
            params=request.params,
            json=request.body,
        ) as response:
            return response.status, await response.text()

    @staticmethod
    def _reject(request: QueuedRequest, error: Exception) -> None:
        if not request.future.done():
            request.future.set_exception(error)

    @staticmethod
    def _unwrap(response: Any) -> Any:
        """Strip the ``{success, data, error}`` envelope."""
        if isinstance(response, dict) and "success" in response:
            if not response.get("success"):
                raise APIError(
                    str(response.get("error") or "Request failed"),
                    response_data=response,
                )
            return response.get("data")
        return response

    def _require_signer(self) -> AgentSigner:
        if self.signer is None:
            raise AuthError("Authentication required for trading operations")
        return self.signer

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        return self._unwrap(await self.enqueue("GET", path, params=params))

    async def _post_signed(self, path: str, operation: str, data: JSONDict) -> Any:
        body = self._require_signer().build_request(
            operation,
            data,
            expiry_window=self.config.expiry_window_ms,
        )
        return self._unwrap(await self.enqueue("POST", path, body=body))

    # Reads

    async def get_account_info(self, wallet: str) -> JSONDict:
        """Get the account snapshot (balances, margin) for a wallet."""
        return await self._get("/account", {"account": wallet})

    async def get_available_balance(self, wallet: str) -> Decimal:
        """Get the collateral available for new orders."""
        info = await self.get_account_info(wallet)
        if not isinstance(info, dict) or info.get("available_to_spend") is None:
            raise APIError(
                "Account snapshot missing available_to_spend",
                response_data=info,
            )
        return safe_decimal(info["available_to_spend"])

    async def get_positions(self, wallet: str) -> PositionList:
        """Get open positions for a wallet."""
        data = await self._get("/positions", {"account": wallet})
        if isinstance(data, dict):
            data = data.get("positions")
        return list(data or [])

    async def get_open_orders(self, wallet: str, status: str = "open") -> List[JSONDict]:
        """Get orders for a wallet filtered by status."""
        data = await self._get("/orders", {"account": wallet, "status": status})
        return list(data or [])

    async def get_markets(self) -> List[JSONDict]:
        """Get market metadata (symbol, lot size, tick size, ...)."""
        data = await self._get("/info")
        return list(data or [])

    # Writes

    async def create_market_order(
        self,
        symbol: str,
        amount: str,
        side: Union[OrderSide, str],
        slippage_percent: str = "0.5",
        reduce_only: bool = False,
    ) -> Any:
        """Submit a market order."""
        data = {
            "symbol": symbol,
            "amount": amount,
            "side": OrderSide(side).value,
            "slippage_percent": slippage_percent,
            "reduce_only": reduce_only,
        }
        logger.info(
            "Creating market order",
            account=short_wallet(self.account),
            symbol=symbol,
            side=data["side"],
            amount=amount,
            reduce_only=reduce_only,
        )
        return await self._post_signed("/orders/create_market", "create_market_order", data)

    async def create_limit_order(
        self,
        symbol: str,
        amount: str,
        side: Union[OrderSide, str],
        price: str,
        post_only: bool = False,
        reduce_only: bool = False,
    ) -> Any:
        """Submit a limit order."""
        data = {
            "symbol": symbol,
            "amount": amount,
            "side": OrderSide(side).value,
            "price": price,
            "post_only": post_only,
            "reduce_only": reduce_only,
        }
        logger.info(
            "Creating limit order",
            account=short_wallet(self.account),
            symbol=symbol,
            side=data["side"],
            amount=amount,
            price=price,
        )
        return await self._post_signed("/orders/create", "create_limit_order", data)

    async def cancel_order(self, order_id: Union[int, str]) -> Any:
        """Cancel an open order."""
        logger.info("Cancelling order", account=short_wallet(self.account), order_id=order_id)
        return await self._post_signed("/orders/cancel", "cancel_order", {"order_id": order_id})


ClientFactory = Callable[[str, str], PacificaRESTClient]


class RESTClientPool:
    """
    One started, signed client per copier account.

    Sharing the client shares its rate budget across every fill replicated
    for that copier. A changed key or a stopped client is replaced.
    """

    def __init__(self, factory: ClientFactory):
        self._factory = factory
        self._clients: Dict[str, Tuple[str, PacificaRESTClient]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        api_url: Optional[str] = None,
        config: Optional[PacificaConfig] = None,
    ) -> "RESTClientPool":
        return cls(lambda account, key: PacificaRESTClient(api_url, account, key, config))

    async def get(self, account: str, private_key: str) -> PacificaRESTClient:
        """Get or create the client for ``account``."""
        fingerprint = hashlib.sha256(private_key.encode("utf-8")).hexdigest()

        async with self._lock:
            entry = self._clients.get(account)
            if entry is not None and entry[0] == fingerprint and entry[1].is_running:
                return entry[1]

            if entry is not None:
                logger.info("Replacing copier client", account=short_wallet(account))
                await entry[1].close()

            client = self._factory(account, private_key)
            await client.start()
            self._clients[account] = (fingerprint, client)
            return client

    async def close_all(self) -> None:
        async with self._lock:
            clients = [client for _, client in self._clients.values()]
            self._clients.clear()

        for client in clients:
            await client.close()

    def __len__(self) -> int:
        return len(self._clients)
