"""Tests for the replication coordinator."""

from decimal import Decimal

import pytest

from copytrader.common.exceptions import APIError
from copytrader.common.types import OrderSide, ReplicationStatus, SizingMethod, SkipReason, TradeSide
from copytrader.exchange.market_info import MarketInfoCache
from copytrader.replication.coordinator import ReplicationCoordinator
from copytrader.replication.models import Fill

MASTER = "MasterWa11et1111111111111111111111111111111"
LOT = Decimal("0.00001")


def btc_fill(trade_side=TradeSide.OPEN_LONG, amount="0.002", price="50000", master=MASTER, symbol="btc"):
    return Fill(master, symbol, trade_side, Decimal(amount), Decimal(price))


@pytest.fixture
def market_info():
    async def fetch():
        return [{"symbol": "BTC", "lot_size": str(LOT)}, {"symbol": "SOL", "lot_size": "0.01"}]

    return MarketInfoCache(fetch, Decimal("0.00001"))


@pytest.fixture
def build(vault, market_info, client_pool, fake_feed, fake_store_factory, replication_config):
    """Coordinator over fakes for the given relationships."""

    def _build(*relationships):
        store = fake_store_factory(relationships)
        return ReplicationCoordinator(
            store=store,
            feed=fake_feed,
            decrypt=vault.decrypt,
            market_info=market_info,
            client_pool=client_pool,
            config=replication_config,
        )

    return _build


class TestScenarios:
    """End-to-end sizing through the coordinator."""

    async def test_multiplier_open_long(self, build, make_relationship, client_pool):
        coordinator = build(make_relationship(sizing_value=Decimal("0.5")))

        [result] = await coordinator.process_fill(btc_fill())

        assert result.status == ReplicationStatus.SUBMITTED
        assert result.amount == "0.001"
        assert result.side == OrderSide.BID
        assert result.reduce_only is False

        [order] = next(iter(client_pool.clients.values())).orders
        assert order == {
            "symbol": "BTC",
            "amount": "0.001",
            "side": OrderSide.BID,
            "slippage_percent": "0.5",
            "reduce_only": False,
        }
        assert client_pool.keys[result.user_wallet] == "copier-agent-key"

    async def test_fixed_usd(self, build, make_relationship):
        coordinator = build(make_relationship(
            sizing_method=SizingMethod.FIXED_USD, sizing_value=Decimal("100"),
        ))
        [result] = await coordinator.process_fill(btc_fill())
        assert result.amount == "0.002"

    async def test_close_long_is_reduce_only_ask(self, build, make_relationship):
        coordinator = build(make_relationship(sizing_value=Decimal("1")))
        [result] = await coordinator.process_fill(
            btc_fill(TradeSide.CLOSE_LONG, amount="0.001", price="51000")
        )
        assert result.side == OrderSide.ASK
        assert result.reduce_only is True

    @pytest.mark.parametrize("method,value", [
        (SizingMethod.MULTIPLIER, Decimal("2")),
        (SizingMethod.FIXED_USD, Decimal("500")),
        (SizingMethod.BALANCE_PERCENT, Decimal("50")),
    ])
    async def test_position_cap(self, build, make_relationship, method, value):
        coordinator = build(make_relationship(
            sizing_method=method, sizing_value=value, max_position_cap=Decimal("40"),
        ))
        [result] = await coordinator.process_fill(btc_fill(amount="0.01"))
        assert Decimal(result.amount) <= Decimal("0.0008")

    async def test_insufficient_balance_never_orders(self, build, make_relationship, client_pool,
                                                     fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"))
        client = fake_client_factory(balance=Decimal("10"))
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        # 0.00124 * 50000 = 62 USD notional
        [result] = await coordinator.process_fill(btc_fill(amount="0.00124"))

        assert result.status == ReplicationStatus.SKIPPED
        assert result.reason == SkipReason.INSUFFICIENT_BALANCE
        assert client.orders == []


class TestRiskRules:
    """Per-relationship filters and limits."""

    async def test_symbol_allow_list(self, build, make_relationship, client_pool):
        coordinator = build(make_relationship(symbols=["SOL"]))
        [result] = await coordinator.process_fill(btc_fill())
        assert result.reason == SkipReason.SYMBOL_FILTERED
        assert client_pool.keys == {}

    async def test_below_lot_size(self, build, make_relationship):
        coordinator = build(make_relationship(sizing_value=Decimal("0.01")))
        [result] = await coordinator.process_fill(btc_fill(amount="0.0001", symbol="SOL", price="100"))
        assert result.reason == SkipReason.BELOW_LOT_SIZE

    async def test_symbol_multiplier(self, build, make_relationship):
        coordinator = build(make_relationship(
            sizing_value=Decimal("1"), symbol_multipliers={"BTC": Decimal("2")},
        ))
        [result] = await coordinator.process_fill(btc_fill(amount="0.001"))
        assert result.amount == "0.002"

    async def test_leverage_clamp(self, build, make_relationship, client_pool, fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"), custom_leverage=1)
        client = fake_client_factory(balance=Decimal("100"))
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        # Wanted 0.01 BTC (500 USD); 1x on 100 USD allows 0.002 BTC
        [result] = await coordinator.process_fill(btc_fill(amount="0.01"))

        assert result.status == ReplicationStatus.SUBMITTED
        assert result.amount == "0.002"
        assert client.orders[0]["amount"] == "0.002"

    async def test_leverage_above_balance_still_checked(self, build, make_relationship, client_pool,
                                                        fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"), custom_leverage=2)
        client_pool.clients[rel.user_wallet] = fake_client_factory(balance=Decimal("100"))
        coordinator = build(rel)

        # 2x allows 0.004 BTC (200 USD) which is still more than the balance
        [result] = await coordinator.process_fill(btc_fill(amount="0.01"))

        assert result.reason == SkipReason.INSUFFICIENT_BALANCE

    async def test_leverage_clamp_to_zero(self, build, make_relationship, client_pool, fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"), custom_leverage=1)
        client_pool.clients[rel.user_wallet] = fake_client_factory(balance=Decimal("0.1"))
        coordinator = build(rel)

        [result] = await coordinator.process_fill(btc_fill(amount="0.01", symbol="SOL", price="100"))

        assert result.reason == SkipReason.BELOW_LOT_AFTER_LEVERAGE

    async def test_exposure_limit(self, build, make_relationship, client_pool, fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"), max_total_exposure=Decimal("1000"))
        client = fake_client_factory(positions=[{"amount": "0.018", "entry_price": "50000"}])
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        # 900 open + 100 new is allowed, 900 + 150 is not
        [allowed] = await coordinator.process_fill(btc_fill(amount="0.002"))
        [blocked] = await coordinator.process_fill(btc_fill(amount="0.003"))

        assert allowed.status == ReplicationStatus.SUBMITTED
        assert blocked.reason == SkipReason.EXPOSURE_LIMIT
        assert len(client.orders) == 1

    async def test_balance_percent_reads_balance_once(self, build, make_relationship, client_pool,
                                                      fake_client_factory):
        rel = make_relationship(sizing_method=SizingMethod.BALANCE_PERCENT, sizing_value=Decimal("10"))
        client = fake_client_factory(balance=Decimal("1000"))
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        [result] = await coordinator.process_fill(btc_fill())

        # 10% of 1000 USD at 50000
        assert result.amount == "0.002"
        assert client.balance_reads == 1


class TestIsolation:
    """One relationship never affects another."""

    async def test_bad_credential_skips_only_its_relationship(self, build, make_relationship):
        good = make_relationship(id=1, user_wallet="GoodCopier")
        bad = make_relationship(id=2, user_wallet="BadCopier", encrypted_api_key="de:ad:beef")
        coordinator = build(good, bad)

        results = {r.user_wallet: r for r in await coordinator.process_fill(btc_fill())}

        assert results["GoodCopier"].status == ReplicationStatus.SUBMITTED
        assert results["BadCopier"].reason == SkipReason.DECRYPTION_FAILED

    async def test_failing_copier_does_not_block_others(self, build, make_relationship, client_pool,
                                                        fake_client_factory):
        ok_rel = make_relationship(id=1, user_wallet="OkCopier")
        failing = make_relationship(id=2, user_wallet="FailingCopier")
        client_pool.clients["FailingCopier"] = fake_client_factory(order_error=APIError("HTTP 400: bad"))
        coordinator = build(ok_rel, failing)

        results = {r.user_wallet: r for r in await coordinator.process_fill(btc_fill())}

        assert results["OkCopier"].status == ReplicationStatus.SUBMITTED
        assert results["FailingCopier"].status == ReplicationStatus.FAILED
        assert "HTTP 400" in results["FailingCopier"].error

    async def test_store_error_is_contained(self, build, make_relationship):
        coordinator = build(make_relationship())
        coordinator.store.error = RuntimeError("db locked")
        assert await coordinator.process_fill(btc_fill()) == []

    async def test_no_relationships(self, build):
        coordinator = build()
        assert await coordinator.process_fill(btc_fill()) == []

    async def test_consecutive_failures_tracked(self, build, make_relationship, client_pool,
                                                fake_client_factory):
        rel = make_relationship()
        client = fake_client_factory(order_error=APIError("rejected"))
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        for _ in range(4):
            await coordinator.process_fill(btc_fill())
        assert coordinator.consecutive_failures(rel) == 4

        client.order_error = None
        await coordinator.process_fill(btc_fill())
        assert coordinator.consecutive_failures(rel) == 0


class TestOrderingAndLifecycle:
    """Channels, draining and subscription reconciliation."""

    async def test_fills_for_one_master_keep_feed_order(self, build, make_relationship, client_pool,
                                                        fake_client_factory):
        rel = make_relationship(sizing_value=Decimal("1"))
        client = fake_client_factory(order_delay=0.01)
        client_pool.clients[rel.user_wallet] = client
        coordinator = build(rel)

        await coordinator.start()
        for amount in ("0.001", "0.002", "0.003"):
            await coordinator.handle_fill(btc_fill(amount=amount))
        await coordinator.stop()

        assert [o["amount"] for o in client.orders] == ["0.001", "0.002", "0.003"]
        assert client_pool.closed

    async def test_fills_dropped_after_stop(self, build, make_relationship, client_pool):
        coordinator = build(make_relationship())
        await coordinator.start()
        await coordinator.stop()

        await coordinator.handle_fill(btc_fill())
        assert client_pool.clients == {}

    async def test_reconcile_subscriptions(self, build, make_relationship, fake_feed):
        coordinator = build(
            make_relationship(id=1, master_wallet="MasterA"),
            make_relationship(id=2, master_wallet="MasterB", is_active=False),
        )
        fake_feed.subscriptions.add("StaleMaster")

        await coordinator.reconcile_subscriptions()

        assert fake_feed.subscriptions == {"MasterA"}
        assert ("subscribe", "MasterA") in fake_feed.commands
        assert ("unsubscribe", "StaleMaster") in fake_feed.commands

    async def test_relationship_change_triggers_reconcile(self, build, make_relationship, fake_feed):
        rel = make_relationship(master_wallet="MasterA")
        coordinator = build()
        coordinator.store.relationships.append(rel)

        await coordinator.notify_relationships_changed("create", rel)

        assert fake_feed.subscriptions == {"MasterA"}

    async def test_start_reconciles(self, build, make_relationship, fake_feed):
        coordinator = build(make_relationship(master_wallet="MasterA"))
        await coordinator.start()
        try:
            assert fake_feed.subscriptions == {"MasterA"}
        finally:
            await coordinator.stop()
