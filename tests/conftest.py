"""Shared fixtures and fakes for the copy-trading tests."""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

import base58
import duckdb
import pytest
from nacl.signing import SigningKey

from copytrader.common.config import PacificaConfig, ReplicationConfig
from copytrader.common.types import SizingMethod
from copytrader.common.vault import CredentialVault
from copytrader.replication.models import CopyRelationship
from copytrader.replication.store import DuckDBRelationshipStore

SEED = b"\x01" * 32
VAULT_KEY = "00112233445566778899aabbccddeeff" * 2
MASTER = "MasterWa11et1111111111111111111111111111111"
COPIER = "CopierWa11et111111111111111111111111111111"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is truthy or fail."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeExecutionClient:
    """Stands in for a signed PacificaRESTClient."""

    def __init__(
        self,
        balance: Decimal = Decimal("1000000"),
        positions: Optional[List[Dict[str, Any]]] = None,
        order_error: Optional[Exception] = None,
        order_delay: float = 0.0,
    ):
        self.balance = balance
        self.positions = positions or []
        self.order_error = order_error
        self.order_delay = order_delay
        self.orders: List[Dict[str, Any]] = []
        self.balance_reads = 0
        self.position_reads = 0

    async def get_available_balance(self, wallet: str) -> Decimal:
        self.balance_reads += 1
        return self.balance

    async def get_positions(self, wallet: str) -> List[Dict[str, Any]]:
        self.position_reads += 1
        return list(self.positions)

    async def create_market_order(self, **kwargs: Any) -> Dict[str, Any]:
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        if self.order_error is not None:
            raise self.order_error
        self.orders.append(kwargs)
        return {"order_id": len(self.orders)}


class FakeClientPool:
    """One FakeExecutionClient per copier wallet."""

    def __init__(self):
        self.clients: Dict[str, FakeExecutionClient] = {}
        self.keys: Dict[str, str] = {}
        self.closed = False

    async def get(self, account: str, private_key: str) -> FakeExecutionClient:
        self.keys[account] = private_key
        return self.clients.setdefault(account, FakeExecutionClient())

    async def close_all(self) -> None:
        self.closed = True


class FakeFeed:
    """Records subscription changes like PacificaWebSocketClient does."""

    def __init__(self):
        self.subscriptions = set()
        self.commands: List[tuple] = []

    async def subscribe(self, wallet: str) -> None:
        self.subscriptions.add(wallet)
        self.commands.append(("subscribe", wallet))

    async def unsubscribe(self, wallet: str) -> None:
        self.subscriptions.discard(wallet)
        self.commands.append(("unsubscribe", wallet))


class FakeStore:
    """In-memory relationship source."""

    def __init__(self, relationships: Optional[List[CopyRelationship]] = None):
        self.relationships = list(relationships or [])
        self.error: Optional[Exception] = None

    async def list_active_by_master(self, master_wallet: str) -> List[CopyRelationship]:
        if self.error is not None:
            raise self.error
        return [
            r for r in self.relationships
            if r.master_wallet == master_wallet and r.is_active
        ]

    async def list_active_master_wallets(self):
        if self.error is not None:
            raise self.error
        return {r.master_wallet for r in self.relationships if r.is_active}


@pytest.fixture
def signing_key() -> SigningKey:
    return SigningKey(SEED)


@pytest.fixture
def private_key_b58(signing_key) -> str:
    """Solana-style keypair: seed followed by public key."""
    return base58.b58encode(SEED + bytes(signing_key.verify_key)).decode("ascii")


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(VAULT_KEY)


@pytest.fixture
def pacifica_config() -> PacificaConfig:
    return PacificaConfig(
        api_url="https://api.test/api/v1",
        ws_url="wss://ws.test/ws",
        rate_limit_retry_delay=0.0,
        queue_poll_interval=0.001,
        ping_interval=3600.0,
        connection_timeout=1.0,
    )


@pytest.fixture
def replication_config() -> ReplicationConfig:
    return ReplicationConfig(reconcile_interval=3600.0, failure_warning_threshold=3)


@pytest.fixture
def duckdb_conn():
    conn = duckdb.connect(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def store(duckdb_conn) -> DuckDBRelationshipStore:
    return DuckDBRelationshipStore(duckdb_conn)


@pytest.fixture
def make_relationship(vault):
    """Factory for valid relationships with an encrypted key."""

    def _make(**overrides: Any) -> CopyRelationship:
        data = {
            "id": 1,
            "user_wallet": COPIER,
            "master_wallet": MASTER,
            "encrypted_api_key": vault.encrypt("copier-agent-key"),
            "sizing_method": SizingMethod.MULTIPLIER,
            "sizing_value": Decimal("0.5"),
            "is_active": True,
        }
        data.update(overrides)
        return CopyRelationship(**data)

    return _make


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until


@pytest.fixture
def client_pool() -> FakeClientPool:
    return FakeClientPool()


@pytest.fixture
def fake_feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def fake_store_factory():
    return FakeStore


@pytest.fixture
def fake_client_factory():
    return FakeExecutionClient
