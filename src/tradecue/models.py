"""Core data models for tradecue."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

from tradecue.errors import PayloadError


class WorkItemType(str, Enum):
    """Kinds of work the queue knows how to perform."""

    SUBMIT_ORDER = "SUBMIT_ORDER"
    CANCEL_ORDER = "CANCEL_ORDER"
    SYNC_ORDERS = "SYNC_ORDERS"
    CLOSE_POSITION = "CLOSE_POSITION"
    KILL_SWITCH = "KILL_SWITCH"
    EVALUATE_DECISION = "EVALUATE_DECISION"
    SYNC_ASSET_UNIVERSE = "SYNC_ASSET_UNIVERSE"


class WorkItemStatus(str, Enum):
    """Possible states for a work item."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    DEAD_LETTER = "DEAD_LETTER"


class RunStatus(str, Enum):
    """Outcome of a single claimed attempt."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


# Statuses that hold an idempotency key.
LIVE_STATUSES = (WorkItemStatus.PENDING, WorkItemStatus.RUNNING, WorkItemStatus.SUCCEEDED)

ORDER_SIDES = ("buy", "sell")
ORDER_TYPES = ("market", "limit", "stop", "stop_limit", "trailing_stop")
TIME_IN_FORCE = ("day", "gtc", "opg", "cls", "ioc", "fok")


# --- Payloads ---


def _text(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def _decimal_text(data: dict[str, Any], key: str, *aliases: str) -> str | None:
    """Read a positive decimal field, keeping the string form the broker expects."""
    raw = _text(data, key, *aliases)
    if raw is None:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise PayloadError(f"{key} must be numeric, got {raw!r}") from None
    if not value.is_finite() or value <= 0:
        raise PayloadError(f"{key} must be positive, got {raw!r}")
    return raw


@dataclass(frozen=True)
class SubmitOrderPayload:
    symbol: str
    side: str
    qty: str | None = None
    notional: str | None = None
    type: str = "market"
    time_in_force: str = "day"
    limit_price: str | None = None
    stop_price: str | None = None
    extended_hours: bool = False
    order_class: str | None = None
    take_profit_limit_price: str | None = None
    stop_loss_stop_price: str | None = None
    trace_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmitOrderPayload:
        symbol = _text(data, "symbol")
        if symbol is None:
            raise PayloadError("symbol is required")
        side = str(data.get("side", "")).lower()
        if side not in ORDER_SIDES:
            raise PayloadError(f"side must be one of {ORDER_SIDES}, got {data.get('side')!r}")

        order_type = str(data.get("type") or "market").lower()
        if order_type not in ORDER_TYPES:
            raise PayloadError(f"Unsupported order type: {order_type}")
        tif = str(data.get("time_in_force") or "day").lower()
        if tif not in TIME_IN_FORCE:
            raise PayloadError(f"Unsupported time_in_force: {tif}")

        qty = _decimal_text(data, "qty")
        notional = _decimal_text(data, "notional")
        if qty is None and notional is None:
            raise PayloadError("Either qty or notional is required")
        if qty is not None and notional is not None:
            raise PayloadError("qty and notional are mutually exclusive")

        take_profit = data.get("take_profit") or {}
        stop_loss = data.get("stop_loss") or {}

        return cls(
            symbol=symbol.upper(),
            side=side,
            qty=qty,
            notional=notional,
            type=order_type,
            time_in_force=tif,
            limit_price=_decimal_text(data, "limit_price"),
            stop_price=_decimal_text(data, "stop_price"),
            extended_hours=bool(data.get("extended_hours", False)),
            order_class=_text(data, "order_class"),
            take_profit_limit_price=(
                _decimal_text(take_profit, "limit_price")
                or _decimal_text(data, "take_profit_limit_price")
            ),
            stop_loss_stop_price=(
                _decimal_text(stop_loss, "stop_price")
                or _decimal_text(data, "stop_loss_stop_price")
            ),
            trace_id=_text(data, "traceId", "trace_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "time_in_force": self.time_in_force,
            "extended_hours": self.extended_hours,
        }
        optional = {
            "qty": self.qty,
            "notional": self.notional,
            "limit_price": self.limit_price,
            "stop_price": self.stop_price,
            "order_class": self.order_class,
            "traceId": self.trace_id,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.take_profit_limit_price is not None:
            data["take_profit"] = {"limit_price": self.take_profit_limit_price}
        if self.stop_loss_stop_price is not None:
            data["stop_loss"] = {"stop_price": self.stop_loss_stop_price}
        return data

    @property
    def is_crypto(self) -> bool:
        return "/" in self.symbol


@dataclass(frozen=True)
class CancelOrderPayload:
    order_id: str
    trace_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CancelOrderPayload:
        order_id = _text(data, "orderId", "order_id")
        if order_id is None:
            raise PayloadError("Missing orderId in payload")
        return cls(order_id=order_id, trace_id=_text(data, "traceId", "trace_id"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"orderId": self.order_id}
        if self.trace_id:
            data["traceId"] = self.trace_id
        return data


@dataclass(frozen=True)
class SyncPayload:
    """Payload shared by SYNC_ORDERS and SYNC_ASSET_UNIVERSE."""

    trace_id: str | None = None
    asset_class: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncPayload:
        return cls(
            trace_id=_text(data, "traceId", "trace_id"),
            asset_class=_text(data, "assetClass", "asset_class"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.trace_id:
            data["traceId"] = self.trace_id
        if self.asset_class:
            data["assetClass"] = self.asset_class
        return data


@dataclass(frozen=True)
class KillSwitchPayload:
    close_positions: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KillSwitchPayload:
        return cls(close_positions=bool(data.get("closePositions", data.get("close_positions", False))))

    def to_dict(self) -> dict[str, Any]:
        return {"closePositions": self.close_positions}


@dataclass(frozen=True)
class ClosePositionPayload:
    symbol: str
    trace_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClosePositionPayload:
        symbol = _text(data, "symbol")
        if symbol is None:
            raise PayloadError("symbol is required")
        return cls(symbol=symbol.upper(), trace_id=_text(data, "traceId", "trace_id"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"symbol": self.symbol}
        if self.trace_id:
            data["traceId"] = self.trace_id
        return data


@dataclass(frozen=True)
class EvaluateDecisionPayload:
    decision_id: str
    trace_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluateDecisionPayload:
        decision_id = _text(data, "decisionId", "decision_id")
        if decision_id is None:
            raise PayloadError("Missing decisionId in payload")
        return cls(decision_id=decision_id, trace_id=_text(data, "traceId", "trace_id"))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"decisionId": self.decision_id}
        if self.trace_id:
            data["traceId"] = self.trace_id
        return data


Payload = Union[
    SubmitOrderPayload,
    CancelOrderPayload,
    SyncPayload,
    KillSwitchPayload,
    ClosePositionPayload,
    EvaluateDecisionPayload,
]

PAYLOAD_TYPES: dict[WorkItemType, type] = {
    WorkItemType.SUBMIT_ORDER: SubmitOrderPayload,
    WorkItemType.CANCEL_ORDER: CancelOrderPayload,
    WorkItemType.SYNC_ORDERS: SyncPayload,
    WorkItemType.CLOSE_POSITION: ClosePositionPayload,
    WorkItemType.KILL_SWITCH: KillSwitchPayload,
    WorkItemType.EVALUATE_DECISION: EvaluateDecisionPayload,
    WorkItemType.SYNC_ASSET_UNIVERSE: SyncPayload,
}


def parse_payload(item_type: WorkItemType | str, data: Payload | dict[str, Any] | None) -> Payload:
    """Validate raw payload data against the schema for ``item_type``.

    Already-typed payloads pass through after a type check.

    Raises:
        PayloadError: If the type is unknown or the payload is invalid.
    """
    try:
        item_type = WorkItemType(item_type)
    except ValueError:
        raise PayloadError(f"Unknown work item type: {item_type}") from None

    payload_cls = PAYLOAD_TYPES[item_type]
    if isinstance(data, payload_cls):
        return data
    if data is not None and not isinstance(data, dict):
        raise PayloadError(
            f"{item_type.value} expects {payload_cls.__name__}, got {type(data).__name__}"
        )
    return payload_cls.from_dict(data or {})


# --- Work items ---


@dataclass
class NewWorkItem:
    """A request to enqueue work."""

    type: WorkItemType
    payload: Payload
    idempotency_key: str | None = None
    max_attempts: int | None = None
    decision_id: str | None = None
    run_at: float | None = None  # Earliest claim time, defaults to now

    @classmethod
    def create(
        cls,
        item_type: WorkItemType | str,
        payload: Payload | dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> NewWorkItem:
        """Build a request, validating the payload for its type."""
        item_type = WorkItemType(item_type)
        return cls(type=item_type, payload=parse_payload(item_type, payload), **kwargs)

    @property
    def symbol(self) -> str | None:
        return getattr(self.payload, "symbol", None)


@dataclass
class WorkItem:
    """A unit of intended work, as persisted."""

    id: str
    type: WorkItemType
    status: WorkItemStatus
    payload: Payload
    idempotency_key: str | None = None
    attempts: int = 0
    max_attempts: int = 3
    next_run_at: float = 0.0
    last_error: str | None = None
    broker_order_id: str | None = None
    result: dict[str, Any] | None = None
    symbol: str | None = None
    decision_id: str | None = None
    claimed_by: str | None = None
    lease_expires_at: float | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkItemStatus.SUCCEEDED, WorkItemStatus.DEAD_LETTER)


@dataclass
class WorkItemRun:
    """Append-only audit record of one claimed attempt."""

    id: str
    work_item_id: str
    attempt_number: int
    status: RunStatus
    started_at: float
    finished_at: float | None = None
    error: str | None = None
    duration_ms: int | None = None


@dataclass
class Succeeded:
    """Successful handler outcome."""

    result: dict[str, Any] = field(default_factory=dict)
    broker_order_id: str | None = None


# --- Order records ---


@dataclass
class OrderRecord:
    """Local copy of a broker order."""

    broker_order_id: str
    symbol: str
    side: str
    type: str
    status: str
    client_order_id: str | None = None
    time_in_force: str | None = None
    qty: str | None = None
    notional: str | None = None
    limit_price: str | None = None
    stop_price: str | None = None
    extended_hours: bool = False
    order_class: str | None = None
    filled_qty: str | None = None
    filled_avg_price: str | None = None
    submitted_at: str | None = None
    filled_at: str | None = None
    trace_id: str | None = None
    work_item_id: str | None = None
    raw: dict[str, Any] | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FillRecord:
    broker_fill_id: str
    broker_order_id: str
    symbol: str
    side: str
    qty: str
    price: str
    occurred_at: str
    trace_id: str | None = None


@dataclass
class AgentStatus:
    kill_switch_active: bool = False
    updated_at: float | None = None
