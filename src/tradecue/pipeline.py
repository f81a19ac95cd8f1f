"""SUBMIT_ORDER handler.

Runs once per claimed attempt. Every rejection raises JobRejected, which
the engine turns into a dead letter. Anything else propagates and is
classified for retry.

Running the pipeline twice for the same work item never creates two
broker orders: the client order id is derived from the idempotency key,
and an order already carrying that id is adopted instead of resubmitted.
"""

from __future__ import annotations

import logging
import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Iterable, NoReturn

from tradecue.collaborators import (
    BrokerGateway,
    BrokerOrder,
    OrderRequest,
    OrderRouter,
    PriceData,
    RoutedOrder,
    TradabilityService,
    TradingEnforcement,
)
from tradecue.errors import JobRejected
from tradecue.models import OrderRecord, Succeeded, SubmitOrderPayload, WorkItem
from tradecue.repository import OrderStore, StatusStore

logger = logging.getLogger(__name__)

# Terminal broker statuses. An order in one of these with nothing filled had no effect.
DEAD_ORDER_STATUSES = ("canceled", "expired", "rejected")

# Alpaca rejects quantities with more than nine decimal places
QTY_STEP = Decimal("0.000000001")


def derive_client_order_id(item: WorkItem) -> str:
    """First attempt uses the idempotency key (or item id); retries append -r<n>."""
    base = item.idempotency_key or item.id
    if item.attempts == 0:
        return base
    return f"{base}-r{item.attempts}"


def _same_lineage(client_order_id: str | None, base: str, derived: str) -> bool:
    if not client_order_id:
        return False
    return (
        client_order_id == derived
        or client_order_id == base
        or client_order_id.startswith(f"{base}-r")
    )


def _is_dead(order: BrokerOrder) -> bool:
    if order.status not in DEAD_ORDER_STATUSES:
        return False
    try:
        return Decimal(order.filled_qty or "0") <= 0
    except (InvalidOperation, TypeError):
        return False


def _lineage_index(client_order_id: str, base: str) -> int:
    """0 for the base id, n for ``{base}-r{n}``, -1 for anything else."""
    if client_order_id == base:
        return 0
    match = re.fullmatch(rf"{re.escape(base)}-r(\d+)", client_order_id)
    return int(match.group(1)) if match else -1


def next_client_order_id(base: str, taken: Iterable[str]) -> str:
    """First ``{base}-r{n}`` past every id already used in the lineage."""
    highest = max((_lineage_index(cid, base) for cid in taken), default=0)
    return f"{base}-r{max(highest, 0) + 1}"


def _whole(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_DOWN)


def _text(value: Decimal) -> str:
    return format(value.normalize(), "f")


class OrderSubmissionPipeline:
    """
    Validates, transforms and submits one order.

    Example:
        pipeline = OrderSubmissionPipeline(
            gateway, repo, repo, enforcement, tradability, SmartOrderRouter()
        )
        outcome = await pipeline.run(item)
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        status_store: StatusStore,
        order_store: OrderStore,
        enforcement: TradingEnforcement,
        tradability: TradabilityService,
        router: OrderRouter,
        *,
        recent_order_limit: int = 100,
    ) -> None:
        self.gateway = gateway
        self.status_store = status_store
        self.order_store = order_store
        self.enforcement = enforcement
        self.tradability = tradability
        self.router = router
        self.recent_order_limit = recent_order_limit

    async def run(self, item: WorkItem) -> Succeeded:
        order: SubmitOrderPayload = item.payload  # type: ignore[assignment]
        context = {"work_item_id": item.id, "symbol": order.symbol, "side": order.side}

        # 1. Kill switch
        status = await self.status_store.get_status()
        if status.kill_switch_active:
            self._reject("Kill switch is active, order blocked", "kill_switch", context)

        # 2. Eligibility, buys only so positions can always be exited
        if order.side == "buy":
            eligibility = await self.enforcement.can_trade_symbol(order.symbol, order.trace_id)
            if not eligibility.eligible:
                self._reject(
                    f"Symbol {order.symbol} not approved for trading: {eligibility.reason or 'no reason given'}",
                    "not_approved",
                    context,
                )

        # 3. Tradability
        tradability = await self.tradability.validate_symbol_tradable(order.symbol)
        if not tradability.tradable:
            self._reject(
                f"Symbol {order.symbol} is not tradable: {tradability.reason or 'no reason given'}",
                "not_tradable",
                context,
            )

        # 4. Price, best effort
        price = await self._fetch_price(order, context)

        # 5. Route
        routed = self.router.transform(order, price)
        if routed.transformations:
            logger.info(
                "Order transformed for %s session: %s",
                routed.session,
                "; ".join(routed.transformations),
                extra={**context, "transformations": routed.transformations},
            )
        for warning in routed.warnings:
            logger.warning("Router warning for %s: %s", order.symbol, warning, extra=context)

        # 6. Client order id
        client_order_id = derive_client_order_id(item)

        # 7. Broker-side duplicate check
        existing, dead_ids = await self._find_existing_order(item, client_order_id)
        if existing is not None:
            logger.info(
                "Order already at broker for %s (client_order_id=%s), adopting %s",
                order.symbol,
                existing.client_order_id,
                existing.id,
                extra={**context, "broker_order_id": existing.id},
            )
            await self.order_store.upsert_order(self._record(existing, order, item))
            return Succeeded(
                result={"orderId": existing.id, "deduplicated": True},
                broker_order_id=existing.id,
            )
        if client_order_id in dead_ids:
            # The broker keeps client order ids unique even for dead orders
            fresh_id = next_client_order_id(item.idempotency_key or item.id, dead_ids)
            logger.info(
                "Client order id %s belongs to a dead broker order, using %s",
                client_order_id,
                fresh_id,
                extra=context,
            )
            client_order_id = fresh_id

        qty, notional = order.qty, order.notional

        # 8. Sell quantity against the live position
        if order.side == "sell":
            qty, notional = await self._validate_sell_quantity(order, routed, price, context)

        # 9. Buy notional in extended hours must be whole shares
        elif routed.extended_hours and notional is not None:
            qty, notional = self._whole_share_buy(order, price, context), None

        # 10. Submit
        request = OrderRequest(
            symbol=order.symbol,
            side=order.side,
            type=routed.type,
            time_in_force=routed.time_in_force,
            client_order_id=client_order_id,
            qty=qty,
            notional=notional,
            limit_price=routed.limit_price,
            stop_price=routed.stop_price,
            extended_hours=routed.extended_hours,
            order_class=routed.order_class,
            take_profit_limit_price=routed.take_profit_limit_price,
            stop_loss_stop_price=routed.stop_loss_stop_price,
        )
        submitted = await self.gateway.create_order(request)
        await self.order_store.upsert_order(self._record(submitted, order, item))

        logger.info(
            "Submitted %s %s %s (%s) as %s",
            order.side,
            qty or f"${notional}",
            order.symbol,
            routed.type,
            submitted.id,
            extra={**context, "qty": qty, "broker_order_id": submitted.id},
        )
        return Succeeded(
            result={"orderId": submitted.id, "status": submitted.status},
            broker_order_id=submitted.id,
        )

    # --- Steps ---

    @staticmethod
    def _reject(reason: str, category: str, context: dict, **fields) -> NoReturn:
        logger.warning(
            "Order rejected (%s): %s",
            category,
            reason,
            extra={**context, "reason_category": category, **fields},
        )
        raise JobRejected(reason, category=category)

    async def _fetch_price(self, order: SubmitOrderPayload, context: dict) -> PriceData | None:
        try:
            if order.is_crypto:
                snapshots = await self.gateway.get_crypto_snapshots([order.symbol])
            else:
                snapshots = await self.gateway.get_snapshots([order.symbol])
        except Exception as e:
            logger.warning(
                "Price fetch failed for %s, routing without price: %s",
                order.symbol,
                e,
                extra={**context, "error_class": type(e).__name__},
            )
            return None
        price = snapshots.get(order.symbol)
        if price is None or price.reference is None:
            logger.warning("No price data for %s", order.symbol, extra=context)
            return None
        return price

    async def _find_existing_order(
        self, item: WorkItem, client_order_id: str
    ) -> tuple[BrokerOrder | None, set[str]]:
        """Live broker order in this item's lineage, plus the ids of dead ones."""
        base = item.idempotency_key or item.id
        dead_ids: set[str] = set()
        for scope in ("open", "closed"):
            orders = await self.gateway.get_orders(scope, self.recent_order_limit)
            for broker_order in orders:
                if not _same_lineage(broker_order.client_order_id, base, client_order_id):
                    continue
                if _is_dead(broker_order):
                    dead_ids.add(broker_order.client_order_id)
                    continue
                return broker_order, dead_ids
        return None, dead_ids

    async def _validate_sell_quantity(
        self,
        order: SubmitOrderPayload,
        routed: RoutedOrder,
        price: PriceData | None,
        context: dict,
    ) -> tuple[str | None, str | None]:
        positions = await self.gateway.get_positions()
        wanted = {order.symbol, order.symbol.replace("/", "")}
        position = next((p for p in positions if p.symbol in wanted), None)
        if position is None:
            self._reject(f"No position in {order.symbol} to sell", "no_position", context)

        available = Decimal(position.qty_available or position.qty or "0")
        if available <= 0:
            self._reject(
                f"No {order.symbol} shares available to sell (held in open orders)",
                "no_position",
                context,
            )

        if order.qty is not None:
            requested = Decimal(order.qty)
        elif price is not None and price.reference:
            requested = Decimal(order.notional) / Decimal(str(price.reference))
            requested = requested.quantize(QTY_STEP, rounding=ROUND_DOWN)
        else:
            # Cannot size a notional sell without a price; the broker enforces the limit.
            return None, order.notional

        qty = min(requested, available)
        if qty < requested:
            logger.warning(
                "Clamped %s sell from %s to available %s",
                order.symbol,
                _text(requested),
                _text(qty),
                extra={**context, "clamped_from": _text(requested), "clamped_to": _text(qty)},
            )

        if routed.extended_hours:
            whole = _whole(qty)
            if whole < 1:
                self._reject(
                    f"Extended hours require whole shares, only {_text(qty)} {order.symbol} available",
                    "below_min_quantity",
                    context,
                    qty=_text(qty),
                )
            if whole != qty:
                logger.warning(
                    "Floored %s sell to %s whole shares for extended hours",
                    order.symbol,
                    _text(whole),
                    extra={**context, "clamped_from": _text(qty), "clamped_to": _text(whole)},
                )
            qty = whole

        return _text(qty), None

    def _whole_share_buy(
        self, order: SubmitOrderPayload, price: PriceData | None, context: dict
    ) -> str:
        notional = Decimal(order.notional)
        if price is None or not price.reference:
            self._reject(
                f"Cannot size ${order.notional} {order.symbol} buy in extended hours without a price",
                "below_min_quantity",
                context,
            )
        reference = Decimal(str(price.reference))
        shares = _whole(notional / reference)
        if shares < 1:
            self._reject(
                f"${order.notional} buys less than one share of {order.symbol} at ${reference}",
                "below_min_quantity",
                context,
                qty=_text(notional / reference),
            )
        logger.info(
            "Converted $%s %s buy to %s whole shares for extended hours",
            order.notional,
            order.symbol,
            _text(shares),
            extra={**context, "qty": _text(shares)},
        )
        return _text(shares)

    @staticmethod
    def _record(broker_order: BrokerOrder, order: SubmitOrderPayload, item: WorkItem) -> OrderRecord:
        return OrderRecord(
            broker_order_id=broker_order.id,
            symbol=broker_order.symbol or order.symbol,
            side=broker_order.side or order.side,
            type=broker_order.type,
            status=broker_order.status,
            client_order_id=broker_order.client_order_id,
            time_in_force=broker_order.time_in_force,
            qty=broker_order.qty,
            notional=broker_order.notional,
            limit_price=broker_order.limit_price,
            stop_price=broker_order.stop_price,
            extended_hours=broker_order.extended_hours,
            order_class=broker_order.order_class,
            filled_qty=broker_order.filled_qty,
            filled_avg_price=broker_order.filled_avg_price,
            submitted_at=broker_order.submitted_at,
            filled_at=broker_order.filled_at,
            trace_id=order.trace_id,
            work_item_id=item.id,
            raw=broker_order.raw,
        )
