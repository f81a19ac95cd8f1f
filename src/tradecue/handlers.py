"""Handlers for the work item types other than SUBMIT_ORDER."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from tradecue.collaborators import BrokerGateway, BrokerOrder, DecisionEvaluator, TradabilityService
from tradecue.errors import UniverseSyncError
from tradecue.models import (
    CancelOrderPayload,
    ClosePositionPayload,
    EvaluateDecisionPayload,
    FillRecord,
    KillSwitchPayload,
    OrderRecord,
    Succeeded,
    SyncPayload,
    WorkItem,
)
from tradecue.repository import OrderStore, StatusStore

logger = logging.getLogger(__name__)


async def cancel_order(gateway: BrokerGateway, item: WorkItem) -> Succeeded:
    payload: CancelOrderPayload = item.payload  # type: ignore[assignment]
    await gateway.cancel_order(payload.order_id)
    logger.info("Canceled order %s", payload.order_id, extra={"work_item_id": item.id})
    return Succeeded(result={"canceledOrderId": payload.order_id})


async def close_position(gateway: BrokerGateway, item: WorkItem) -> Succeeded:
    payload: ClosePositionPayload = item.payload  # type: ignore[assignment]
    order = await gateway.close_position(payload.symbol)
    logger.info(
        "Closed position in %s",
        payload.symbol,
        extra={"work_item_id": item.id, "symbol": payload.symbol},
    )
    result = {"symbol": payload.symbol, "closed": True}
    if order is not None:
        result.update(orderId=order.id, status=order.status)
        return Succeeded(result=result, broker_order_id=order.id)
    return Succeeded(result=result)


def _order_record(order: BrokerOrder, trace_id: str | None) -> OrderRecord:
    return OrderRecord(
        broker_order_id=order.id,
        symbol=order.symbol,
        side=order.side,
        type=order.type,
        status=order.status,
        client_order_id=order.client_order_id,
        time_in_force=order.time_in_force,
        qty=order.qty,
        notional=order.notional,
        limit_price=order.limit_price,
        stop_price=order.stop_price,
        extended_hours=order.extended_hours,
        order_class=order.order_class,
        filled_qty=order.filled_qty,
        filled_avg_price=order.filled_avg_price,
        submitted_at=order.submitted_at,
        filled_at=order.filled_at,
        trace_id=trace_id,
        raw=order.raw,
    )


def _has_filled_qty(order: BrokerOrder) -> bool:
    try:
        return float(order.filled_qty or 0) > 0
    except ValueError:
        return False


async def sync_orders(
    gateway: BrokerGateway,
    order_store: OrderStore,
    item: WorkItem,
    *,
    limit: int = 100,
    reconcile: Callable[[BrokerOrder], Awaitable[WorkItem | None]] | None = None,
) -> Succeeded:
    """Mirror open and recently closed broker orders into the order store.

    Orders with filled quantity but no local fill get one synthesized from
    the order's average fill price. When ``reconcile`` is given, each order
    is also offered to it so the work item that placed it can record the
    broker order id. A failure on one order is logged and the batch
    continues.
    """
    payload: SyncPayload = item.payload  # type: ignore[assignment]
    orders = await gateway.get_orders("open", limit) + await gateway.get_orders("closed", limit)

    synced = 0
    fills_created = 0
    reconciled = 0
    errors = 0
    for order in orders:
        try:
            await order_store.upsert_order(_order_record(order, payload.trace_id))
            synced += 1

            if _has_filled_qty(order) and not await order_store.has_fill(order.id):
                created = await order_store.record_fill(
                    FillRecord(
                        broker_fill_id=f"{order.id}-fill",
                        broker_order_id=order.id,
                        symbol=order.symbol,
                        side=order.side,
                        qty=str(order.filled_qty),
                        price=str(order.filled_avg_price or "0"),
                        occurred_at=order.filled_at or order.submitted_at or "",
                        trace_id=payload.trace_id,
                    )
                )
                if created:
                    fills_created += 1

            if reconcile is not None and await reconcile(order) is not None:
                reconciled += 1
        except Exception as e:
            errors += 1
            logger.warning(
                "Failed to sync order %s: %s",
                order.id,
                e,
                extra={"work_item_id": item.id, "symbol": order.symbol, "error_class": type(e).__name__},
            )

    logger.info(
        "Synced %d orders (%d fills created, %d reconciled, %d errors)",
        synced,
        fills_created,
        reconciled,
        errors,
        extra={"work_item_id": item.id},
    )
    return Succeeded(
        result={
            "synced": synced,
            "fillsCreated": fills_created,
            "reconciled": reconciled,
            "errors": errors,
        }
    )


async def kill_switch(
    gateway: BrokerGateway,
    status_store: StatusStore,
    item: WorkItem,
) -> Succeeded:
    """Cancel every open order, optionally flatten, then raise the flag."""
    payload: KillSwitchPayload = item.payload  # type: ignore[assignment]
    logger.warning(
        "Kill switch engaged (close_positions=%s)",
        payload.close_positions,
        extra={"work_item_id": item.id},
    )

    await gateway.cancel_all_orders()

    closed: list[str] = []
    failed: list[str] = []
    if payload.close_positions:
        for position in await gateway.get_positions():
            try:
                await gateway.close_position(position.symbol)
                closed.append(position.symbol)
            except Exception as e:
                failed.append(position.symbol)
                logger.error(
                    "Kill switch could not close %s: %s",
                    position.symbol,
                    e,
                    extra={"work_item_id": item.id, "symbol": position.symbol},
                )

    await status_store.set_status(kill_switch_active=True)
    return Succeeded(
        result={
            "killSwitchActive": True,
            "ordersCanceled": True,
            "positionsClosed": closed,
            "positionsFailed": failed,
        }
    )


async def evaluate_decision(evaluator: DecisionEvaluator, item: WorkItem) -> Succeeded:
    payload: EvaluateDecisionPayload = item.payload  # type: ignore[assignment]
    result = await evaluator.evaluate(payload.decision_id, payload.trace_id)
    return Succeeded(result=dict(result or {}))


async def sync_asset_universe(tradability: TradabilityService, item: WorkItem) -> Succeeded:
    """Refresh the tradable universe; any reported error fails the attempt."""
    payload: SyncPayload = item.payload  # type: ignore[assignment]
    asset_class = payload.asset_class or "us_equity"
    result = await tradability.sync_asset_universe(asset_class)
    if result.errors:
        raise UniverseSyncError(
            f"Asset universe sync reported {len(result.errors)} errors: {'; '.join(result.errors[:3])}"
        )
    logger.info(
        "Synced %d %s assets (%d tradable)",
        result.synced,
        asset_class,
        result.tradable,
        extra={"work_item_id": item.id},
    )
    return Succeeded(result={"synced": result.synced, "tradable": result.tradable})
