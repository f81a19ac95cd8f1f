"""Interfaces of the services the queue talks to.

The queue owns none of these. It is handed concrete implementations at
construction time: a broker gateway, the trading-enforcement and
tradability services, an order router and, optionally, a decision
evaluator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tradecue.models import SubmitOrderPayload


# --- Broker data ---


@dataclass
class BrokerOrder:
    id: str
    symbol: str
    side: str
    status: str
    client_order_id: str | None = None
    type: str = "market"
    time_in_force: str | None = None
    qty: str | None = None
    notional: str | None = None
    limit_price: str | None = None
    stop_price: str | None = None
    filled_qty: str | None = None
    filled_avg_price: str | None = None
    extended_hours: bool = False
    order_class: str | None = None
    submitted_at: str | None = None
    filled_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> BrokerOrder:
        return cls(
            id=str(data["id"]),
            symbol=str(data.get("symbol", "")),
            side=str(data.get("side", "")),
            status=str(data.get("status", "")),
            client_order_id=data.get("client_order_id"),
            type=str(data.get("type") or data.get("order_type") or "market"),
            time_in_force=data.get("time_in_force"),
            qty=data.get("qty"),
            notional=data.get("notional"),
            limit_price=data.get("limit_price"),
            stop_price=data.get("stop_price"),
            filled_qty=data.get("filled_qty"),
            filled_avg_price=data.get("filled_avg_price"),
            extended_hours=bool(data.get("extended_hours", False)),
            order_class=data.get("order_class") or None,
            submitted_at=data.get("submitted_at"),
            filled_at=data.get("filled_at"),
            raw=data,
        )


@dataclass
class BrokerPosition:
    symbol: str
    qty: str
    qty_available: str | None = None
    side: str = "long"
    current_price: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> BrokerPosition:
        return cls(
            symbol=str(data["symbol"]),
            qty=str(data.get("qty", "0")),
            qty_available=data.get("qty_available"),
            side=str(data.get("side", "long")),
            current_price=data.get("current_price"),
        )


@dataclass
class PriceData:
    bid: float | None = None
    ask: float | None = None
    last: float | None = None

    @property
    def reference(self) -> float | None:
        """Best single price: last trade, else the quote midpoint."""
        if self.last:
            return self.last
        if self.bid and self.ask:
            return (self.bid + self.ask) / 2
        return self.ask or self.bid


@dataclass
class OrderRequest:
    """Final, validated parameters sent to the broker."""

    symbol: str
    side: str
    type: str
    time_in_force: str
    client_order_id: str
    qty: str | None = None
    notional: str | None = None
    limit_price: str | None = None
    stop_price: str | None = None
    extended_hours: bool = False
    order_class: str | None = None
    take_profit_limit_price: str | None = None
    stop_loss_stop_price: str | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "time_in_force": self.time_in_force,
            "client_order_id": self.client_order_id,
        }
        optional = {
            "qty": self.qty,
            "notional": self.notional,
            "limit_price": self.limit_price,
            "stop_price": self.stop_price,
            "order_class": self.order_class,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        if self.extended_hours:
            params["extended_hours"] = True
        if self.take_profit_limit_price:
            params["take_profit"] = {"limit_price": self.take_profit_limit_price}
        if self.stop_loss_stop_price:
            params["stop_loss"] = {"stop_price": self.stop_loss_stop_price}
        return params


# --- Service results ---


@dataclass
class Eligibility:
    eligible: bool
    reason: str | None = None


@dataclass
class Tradability:
    tradable: bool
    reason: str | None = None


@dataclass
class UniverseSyncResult:
    synced: int = 0
    tradable: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class RoutedOrder:
    """An order rewritten so the venue will accept it."""

    type: str
    time_in_force: str
    extended_hours: bool
    session: str
    limit_price: str | None = None
    stop_price: str | None = None
    order_class: str | None = None
    take_profit_limit_price: str | None = None
    stop_loss_stop_price: str | None = None
    transformations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Interfaces ---


@runtime_checkable
class BrokerGateway(Protocol):
    async def create_order(self, request: OrderRequest) -> BrokerOrder: ...

    async def cancel_order(self, order_id: str) -> None: ...

    async def cancel_all_orders(self) -> None: ...

    async def get_orders(self, scope: str = "open", limit: int = 100) -> list[BrokerOrder]: ...

    async def get_positions(self) -> list[BrokerPosition]: ...

    async def close_position(self, symbol: str) -> BrokerOrder | None: ...

    async def get_snapshots(self, symbols: list[str]) -> dict[str, PriceData]: ...

    async def get_crypto_snapshots(self, symbols: list[str]) -> dict[str, PriceData]: ...


class TradingEnforcement(Protocol):
    async def can_trade_symbol(self, symbol: str, trace_id: str | None = None) -> Eligibility: ...


class TradabilityService(Protocol):
    async def validate_symbol_tradable(self, symbol: str) -> Tradability: ...

    async def sync_asset_universe(self, asset_class: str) -> UniverseSyncResult: ...


class OrderRouter(Protocol):
    def transform(self, order: SubmitOrderPayload, price: PriceData | None) -> RoutedOrder: ...


class DecisionEvaluator(Protocol):
    async def evaluate(self, decision_id: str, trace_id: str | None = None) -> dict[str, Any]: ...
