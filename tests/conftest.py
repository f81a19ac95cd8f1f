"""Shared fixtures: in-memory repository and fake broker collaborators."""

from __future__ import annotations

import pytest

from tradecue import SqliteRepository, WorkQueue
from tradecue.collaborators import (
    BrokerOrder,
    BrokerPosition,
    Eligibility,
    OrderRequest,
    PriceData,
    Tradability,
    UniverseSyncResult,
)
from tradecue.config import QueueConfig, WorkerConfig
from tradecue.router import REGULAR, SmartOrderRouter

OPEN_ORDER_STATUSES = {"new", "accepted", "pending_new", "partially_filled"}


class FakeGateway:
    """In-memory broker. Orders created here show up in get_orders."""

    def __init__(self) -> None:
        self.orders: list[BrokerOrder] = []
        self.positions: list[BrokerPosition] = []
        self.prices: dict[str, PriceData] = {}
        self.created: list[OrderRequest] = []
        self.canceled: list[str] = []
        self.closed: list[str] = []
        self.cancel_all_calls = 0
        self.create_error: Exception | None = None
        self.snapshot_error: Exception | None = None
        self.close_errors: dict[str, Exception] = {}

    async def create_order(self, request: OrderRequest) -> BrokerOrder:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        order = BrokerOrder(
            id=f"order-{len(self.created)}",
            symbol=request.symbol,
            side=request.side,
            status="accepted",
            client_order_id=request.client_order_id,
            type=request.type,
            time_in_force=request.time_in_force,
            qty=request.qty,
            notional=request.notional,
            limit_price=request.limit_price,
            stop_price=request.stop_price,
            extended_hours=request.extended_hours,
            order_class=request.order_class,
        )
        self.orders.append(order)
        return order

    async def cancel_order(self, order_id: str) -> None:
        self.canceled.append(order_id)

    async def cancel_all_orders(self) -> None:
        self.cancel_all_calls += 1

    async def get_orders(self, scope: str = "open", limit: int = 100) -> list[BrokerOrder]:
        if scope == "open":
            matching = [o for o in self.orders if o.status in OPEN_ORDER_STATUSES]
        else:
            matching = [o for o in self.orders if o.status not in OPEN_ORDER_STATUSES]
        return matching[:limit]

    async def get_positions(self) -> list[BrokerPosition]:
        return list(self.positions)

    async def close_position(self, symbol: str) -> BrokerOrder | None:
        if symbol in self.close_errors:
            raise self.close_errors[symbol]
        self.closed.append(symbol)
        return BrokerOrder(id=f"close-{symbol}", symbol=symbol, side="sell", status="accepted")

    async def get_snapshots(self, symbols: list[str]) -> dict[str, PriceData]:
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return {s: self.prices[s] for s in symbols if s in self.prices}

    async def get_crypto_snapshots(self, symbols: list[str]) -> dict[str, PriceData]:
        return await self.get_snapshots(symbols)


class FakeEnforcement:
    def __init__(self, eligible: bool = True, reason: str | None = None) -> None:
        self.eligible = eligible
        self.reason = reason
        self.calls: list[str] = []

    async def can_trade_symbol(self, symbol: str, trace_id: str | None = None) -> Eligibility:
        self.calls.append(symbol)
        return Eligibility(eligible=self.eligible, reason=self.reason)


class FakeTradability:
    def __init__(self, tradable: bool = True, reason: str | None = None) -> None:
        self.tradable = tradable
        self.reason = reason
        self.sync_result = UniverseSyncResult(synced=10, tradable=8)
        self.synced_classes: list[str] = []

    async def validate_symbol_tradable(self, symbol: str) -> Tradability:
        return Tradability(tradable=self.tradable, reason=self.reason)

    async def sync_asset_universe(self, asset_class: str) -> UniverseSyncResult:
        self.synced_classes.append(asset_class)
        return self.sync_result


class FakeEvaluator:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def evaluate(self, decision_id: str, trace_id: str | None = None) -> dict:
        self.calls.append(decision_id)
        return {"decisionId": decision_id, "action": "hold"}


class SessionClock:
    """Session provider whose session a test can change."""

    def __init__(self, session: str = REGULAR) -> None:
        self.session = session

    def __call__(self) -> str:
        return self.session


@pytest.fixture
async def repo():
    repository = SqliteRepository(":memory:")
    await repository.connect()
    yield repository
    await repository.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def enforcement():
    return FakeEnforcement()


@pytest.fixture
def tradability():
    return FakeTradability()


@pytest.fixture
def session():
    return SessionClock()


@pytest.fixture
def router(session):
    return SmartOrderRouter(session_provider=session)


@pytest.fixture
def config():
    return QueueConfig(
        db_path=":memory:",
        worker=WorkerConfig(interval=0.05, drain_poll_interval=0.01, worker_id="test-worker"),
    )


@pytest.fixture
def queue(repo, gateway, enforcement, tradability, router, config):
    return WorkQueue(
        repo,
        gateway=gateway,
        enforcement=enforcement,
        tradability=tradability,
        router=router,
        config=config,
        rand=lambda: 0.0,
    )


@pytest.fixture
def evaluator():
    return FakeEvaluator()
