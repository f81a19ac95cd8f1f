"""Tests for the SUBMIT_ORDER pipeline."""

import pytest

from tradecue.collaborators import BrokerOrder, BrokerPosition, PriceData
from tradecue.errors import BrokerError, JobRejected
from tradecue.models import NewWorkItem, RunStatus, WorkItemStatus, WorkItemType
from tradecue.pipeline import derive_client_order_id, next_client_order_id
from tradecue.router import AFTER_HOURS, PRE_MARKET


def order(key="signal-1", **fields):
    payload = {"symbol": "AAPL", "side": "buy", "qty": "10", **fields}
    return NewWorkItem.create(WorkItemType.SUBMIT_ORDER, payload, idempotency_key=key)


async def claim(queue, new):
    await queue.enqueue(new)
    return await queue.claim_next()


class TestClientOrderId:
    """Client order id derivation."""

    def test_next_id_skips_used_suffixes(self):
        assert next_client_order_id("abc", ["abc"]) == "abc-r1"
        assert next_client_order_id("abc", ["abc", "abc-r4", "abc-r2"]) == "abc-r5"
        assert next_client_order_id("abc", ["other-r9"]) == "abc-r1"

    async def test_first_attempt_uses_key(self, queue):
        item = await claim(queue, order(key="abc"))
        assert derive_client_order_id(item) == "abc"

    async def test_retry_appends_attempt(self, queue):
        item = await claim(queue, order(key="abc"))
        item.attempts = 2
        assert derive_client_order_id(item) == "abc-r2"

    async def test_falls_back_to_item_id(self, queue):
        item = await claim(queue, order(key=None))
        assert derive_client_order_id(item) == item.id
        item.attempts = 1
        assert derive_client_order_id(item) == f"{item.id}-r1"


class TestGates:
    """Kill switch, eligibility and tradability gates."""

    async def test_kill_switch_blocks(self, queue, repo, gateway):
        await repo.set_status(kill_switch_active=True)
        item = await claim(queue, order())

        with pytest.raises(JobRejected) as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "kill_switch"
        assert gateway.created == []

    async def test_kill_switch_dead_letters_through_worker(self, queue, repo, gateway):
        await repo.set_status(kill_switch_active=True)
        item = await queue.enqueue(order())

        assert await queue.run_cycle()
        final = await queue.get(item.id)
        assert final.status is WorkItemStatus.DEAD_LETTER
        assert "Kill switch" in final.last_error
        assert (await queue.runs(item.id))[0].status is RunStatus.DEAD_LETTER
        assert gateway.created == []

    async def test_buy_not_approved(self, queue, enforcement, gateway):
        enforcement.eligible = False
        enforcement.reason = "not in universe"
        item = await claim(queue, order())

        with pytest.raises(JobRejected, match="not approved") as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "not_approved"
        assert gateway.created == []

    async def test_sell_skips_eligibility(self, queue, enforcement, gateway):
        """Exits are always allowed, even for symbols no longer approved."""
        enforcement.eligible = False
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="10", qty_available="10")]
        item = await claim(queue, order(side="sell"))

        outcome = await queue.pipeline.run(item)
        assert outcome.broker_order_id == "order-1"
        assert enforcement.calls == []

    async def test_not_tradable(self, queue, tradability, gateway):
        tradability.tradable = False
        tradability.reason = "halted"
        item = await claim(queue, order())

        with pytest.raises(JobRejected, match="halted") as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "not_tradable"
        assert gateway.created == []


class TestSubmit:
    """Routing, duplicate detection and submission."""

    async def test_submits_and_persists_order(self, queue, repo, gateway):
        gateway.prices["AAPL"] = PriceData(bid=99.9, ask=100.1, last=100.0)
        item = await claim(queue, order(traceId="trace-9"))

        outcome = await queue.pipeline.run(item)

        assert outcome.result["orderId"] == "order-1"
        assert outcome.result["status"] == "accepted"
        request = gateway.created[0]
        assert request.client_order_id == "signal-1"
        assert request.qty == "10"
        assert request.type == "market"

        record = await repo.get_order("order-1")
        assert record.client_order_id == "signal-1"
        assert record.trace_id == "trace-9"
        assert record.work_item_id == item.id

    async def test_notional_buy_end_to_end(self, queue, gateway):
        item = await queue.enqueue(order(qty=None, notional="1000", type="market"))

        assert await queue.run_cycle()
        final = await queue.get(item.id)
        assert final.status is WorkItemStatus.SUCCEEDED
        assert final.result == {"orderId": "order-1", "status": "accepted"}
        assert final.broker_order_id == "order-1"

    async def test_price_failure_falls_back(self, queue, gateway, session):
        """No quote in extended hours still submits, as a plain market order."""
        session.session = PRE_MARKET
        gateway.snapshot_error = ConnectionError("data feed down")
        item = await claim(queue, order())

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.type == "market"
        assert request.limit_price is None
        assert request.extended_hours is False

    async def test_extended_hours_routes_to_limit(self, queue, gateway, session):
        session.session = AFTER_HOURS
        gateway.prices["AAPL"] = PriceData(last=100.0)
        item = await claim(queue, order())

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.type == "limit"
        assert request.limit_price == "101.00"
        assert request.time_in_force == "day"
        assert request.extended_hours is True

    async def test_existing_broker_order_is_adopted(self, queue, repo, gateway):
        """A prior attempt that reached the broker is not resubmitted."""
        gateway.orders.append(
            BrokerOrder(id="prior", symbol="AAPL", side="buy", status="filled", client_order_id="signal-1")
        )
        item = await claim(queue, order())

        outcome = await queue.pipeline.run(item)
        assert outcome.broker_order_id == "prior"
        assert outcome.result["deduplicated"] is True
        assert gateway.created == []
        assert (await repo.get_order("prior")).work_item_id == item.id

    async def test_retry_lineage_is_adopted(self, queue, gateway):
        gateway.orders.append(
            BrokerOrder(id="prior", symbol="AAPL", side="buy", status="new", client_order_id="signal-1-r1")
        )
        item = await claim(queue, order())
        item.attempts = 2

        outcome = await queue.pipeline.run(item)
        assert outcome.broker_order_id == "prior"
        assert gateway.created == []

    async def test_rejected_broker_order_is_not_a_duplicate(self, queue, gateway):
        gateway.orders.append(
            BrokerOrder(id="bad", symbol="AAPL", side="buy", status="rejected", client_order_id="signal-1")
        )
        item = await claim(queue, order())
        item.attempts = 1

        await queue.pipeline.run(item)
        assert gateway.created[0].client_order_id == "signal-1-r1"

    async def test_unrelated_client_ids_ignored(self, queue, gateway):
        gateway.orders.append(
            BrokerOrder(id="other", symbol="AAPL", side="buy", status="new", client_order_id="signal-10")
        )
        item = await claim(queue, order())

        await queue.pipeline.run(item)
        assert len(gateway.created) == 1

    async def test_invalidated_order_is_placed_again(self, queue, gateway):
        """A canceled success, once invalidated, is replaced by a fresh broker order."""
        first = await queue.enqueue(order())
        assert await queue.run_cycle()
        gateway.orders[0].status = "canceled"
        await queue.invalidate(first.id, "canceled at broker")

        fresh = await queue.enqueue(order())
        assert fresh.id != first.id
        assert await queue.run_cycle()

        after = await queue.get(fresh.id)
        assert after.status is WorkItemStatus.SUCCEEDED
        assert after.result == {"orderId": "order-2", "status": "accepted"}
        assert [r.client_order_id for r in gateway.created] == ["signal-1", "signal-1-r1"]

        # Replaying the fresh item adopts its own order
        replay = await queue.pipeline.run(after)
        assert replay.broker_order_id == "order-2"
        assert len(gateway.created) == 2

    async def test_dead_lineage_continues_past_highest_suffix(self, queue, gateway):
        gateway.orders += [
            BrokerOrder(id="a", symbol="AAPL", side="buy", status="canceled", client_order_id="signal-1"),
            BrokerOrder(id="b", symbol="AAPL", side="buy", status="expired", client_order_id="signal-1-r2"),
        ]
        item = await claim(queue, order())

        outcome = await queue.pipeline.run(item)
        assert outcome.result.get("deduplicated") is None
        assert gateway.created[0].client_order_id == "signal-1-r3"

    async def test_partially_filled_cancel_is_adopted(self, queue, gateway):
        gateway.orders.append(
            BrokerOrder(
                id="partial",
                symbol="AAPL",
                side="buy",
                status="canceled",
                client_order_id="signal-1",
                filled_qty="3",
            )
        )
        item = await claim(queue, order())

        outcome = await queue.pipeline.run(item)
        assert outcome.broker_order_id == "partial"
        assert gateway.created == []

    async def test_retry_after_crash_does_not_duplicate(self, queue, gateway):
        """Running the same item twice yields exactly one broker order."""
        item = await claim(queue, order())
        first = await queue.pipeline.run(item)
        second = await queue.pipeline.run(item)

        assert len(gateway.created) == 1
        assert second.broker_order_id == first.broker_order_id

    async def test_broker_outage_retries(self, queue, gateway):
        gateway.create_error = BrokerError(503, "service unavailable")
        item = await queue.enqueue(order())

        await queue.run_cycle()
        after = await queue.get(item.id)
        assert after.status is WorkItemStatus.PENDING
        assert after.attempts == 1
        assert after.last_error == "HTTP 503: service unavailable"
        assert (await queue.runs(item.id))[0].status is RunStatus.FAILED


class TestSellQuantity:
    """Sell-side quantity validation against the live position."""

    async def test_no_position(self, queue, gateway):
        item = await claim(queue, order(side="sell"))
        with pytest.raises(JobRejected) as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "no_position"

    async def test_nothing_available(self, queue, gateway):
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="10", qty_available="0")]
        item = await claim(queue, order(side="sell"))
        with pytest.raises(JobRejected):
            await queue.pipeline.run(item)

    async def test_clamped_to_available(self, queue, gateway):
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="10", qty_available="4.5")]
        item = await claim(queue, order(side="sell"))

        await queue.pipeline.run(item)
        assert gateway.created[0].qty == "4.5"

    async def test_notional_sell_sized_to_nine_decimals(self, queue, gateway):
        gateway.prices["AAPL"] = PriceData(last=150.0)
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="100", qty_available="100")]
        item = await claim(queue, order(side="sell", qty=None, notional="1000"))

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.qty == "6.666666666"
        assert request.notional is None

    async def test_extended_hours_floors_to_whole_shares(self, queue, gateway, session):
        session.session = PRE_MARKET
        gateway.prices["AAPL"] = PriceData(last=100.0)
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="10", qty_available="4.5")]
        item = await claim(queue, order(side="sell"))

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.qty == "4"
        assert request.limit_price == "99.00"

    async def test_extended_hours_fraction_only_rejected(self, queue, gateway, session):
        session.session = AFTER_HOURS
        gateway.prices["AAPL"] = PriceData(last=100.0)
        gateway.positions = [BrokerPosition(symbol="AAPL", qty="0.5", qty_available="0.5")]
        item = await claim(queue, order(side="sell"))

        with pytest.raises(JobRejected) as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "below_min_quantity"
        assert gateway.created == []

    async def test_crypto_position_symbol_without_slash(self, queue, gateway):
        gateway.positions = [BrokerPosition(symbol="BTCUSD", qty="0.5", qty_available="0.5")]
        new = NewWorkItem.create(
            WorkItemType.SUBMIT_ORDER,
            {"symbol": "BTC/USD", "side": "sell", "qty": "1"},
            idempotency_key="crypto-1",
        )
        item = await claim(queue, new)

        await queue.pipeline.run(item)
        assert gateway.created[0].qty == "0.5"
        assert gateway.created[0].time_in_force == "gtc"


class TestBuyNotional:
    """Buy-side notional in extended hours."""

    async def test_below_one_share_rejected(self, queue, gateway, session):
        session.session = PRE_MARKET
        gateway.prices["AAPL"] = PriceData(last=200.0)
        item = await claim(queue, order(qty=None, notional="150"))

        with pytest.raises(JobRejected) as exc:
            await queue.pipeline.run(item)
        assert exc.value.category == "below_min_quantity"

    async def test_converted_to_whole_shares(self, queue, gateway, session):
        session.session = PRE_MARKET
        gateway.prices["AAPL"] = PriceData(last=200.0)
        item = await claim(queue, order(qty=None, notional="1000"))

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.qty == "5"
        assert request.notional is None

    async def test_regular_hours_keeps_notional(self, queue, gateway):
        gateway.prices["AAPL"] = PriceData(last=200.0)
        item = await claim(queue, order(qty=None, notional="150"))

        await queue.pipeline.run(item)
        request = gateway.created[0]
        assert request.notional == "150"
        assert request.qty is None
