"""Default smart order router.

Rewrites an order so the venue accepts it in the current session instead
of rejecting it: upgrades order types the session does not allow, prices
limit orders off the current quote, and picks a legal time-in-force.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time as dtime
from typing import Callable
from zoneinfo import ZoneInfo

from tradecue.collaborators import PriceData, RoutedOrder
from tradecue.models import SubmitOrderPayload

NEW_YORK = ZoneInfo("America/New_York")

REGULAR = "regular"
PRE_MARKET = "pre_market"
AFTER_HOURS = "after_hours"
CLOSED = "closed"
EXTENDED_SESSIONS = (PRE_MARKET, AFTER_HOURS)


def us_equity_session(now: datetime | None = None) -> str:
    """Session of the US equity market at ``now``. Holidays are not modelled."""
    local = (now or datetime.now(tz=NEW_YORK)).astimezone(NEW_YORK)
    if local.weekday() >= 5:
        return CLOSED
    t = local.time()
    if dtime(4, 0) <= t < dtime(9, 30):
        return PRE_MARKET
    if dtime(9, 30) <= t < dtime(16, 0):
        return REGULAR
    if dtime(16, 0) <= t < dtime(20, 0):
        return AFTER_HOURS
    return CLOSED


@dataclass
class RouterConfig:
    buffer_pct: float = 0.5
    extended_buffer_pct: float = 1.0
    upgrade_market_to_limit: bool = True


def _format_price(price: float) -> str:
    return f"{price:.4f}" if price < 1 else f"{price:.2f}"


class SmartOrderRouter:
    """Implements the OrderRouter interface."""

    def __init__(
        self,
        config: RouterConfig | None = None,
        *,
        session_provider: Callable[[], str] = us_equity_session,
    ) -> None:
        self.config = config or RouterConfig()
        self.session_provider = session_provider

    def transform(self, order: SubmitOrderPayload, price: PriceData | None) -> RoutedOrder:
        crypto = order.is_crypto
        session = REGULAR if crypto else self.session_provider()
        extended = session in EXTENDED_SESSIONS and not crypto
        transformations: list[str] = []
        warnings: list[str] = []

        order_type = self._select_type(order, session, crypto, transformations)
        if extended and not order.extended_hours:
            transformations.append(f"Set extended_hours=true for {session} session")

        limit_price = order.limit_price
        if limit_price is None and (order_type in ("limit", "stop_limit") or extended):
            limit_price = self._limit_price(order, price, extended, transformations)
            if limit_price is None:
                warnings.append("No price data to compute a limit price, falling back to market order")
                order_type = "market"
                extended = False

        stop_price = order.stop_price
        if order_type == "stop_limit" and stop_price is None and limit_price is not None:
            stop_price = limit_price

        tif = self._select_tif(order, order_type, session, crypto, extended, transformations)

        order_class = order.order_class
        take_profit = order.take_profit_limit_price
        stop_loss = order.stop_loss_stop_price
        if order_class == "bracket" and session != REGULAR and not crypto:
            transformations.append(f"Dropped bracket legs ({session} does not support bracket orders)")
            order_class, take_profit, stop_loss = None, None, None

        if extended and order.qty is not None and "." in order.qty.rstrip("0").rstrip("."):
            warnings.append("Fractional shares not allowed in extended hours - order may be rejected")
        if extended and order.notional is not None:
            warnings.append("Notional orders are not accepted in extended hours - use whole-share qty")

        return RoutedOrder(
            type=order_type,
            time_in_force=tif,
            extended_hours=extended,
            session=session,
            limit_price=limit_price if order_type in ("limit", "stop_limit") else None,
            stop_price=stop_price if order_type in ("stop", "stop_limit") else None,
            order_class=order_class,
            take_profit_limit_price=take_profit,
            stop_loss_stop_price=stop_loss,
            transformations=transformations,
            warnings=warnings,
        )

    def _select_type(
        self, order: SubmitOrderPayload, session: str, crypto: bool, transformations: list[str]
    ) -> str:
        requested = order.type
        if crypto:
            return requested

        if session == CLOSED:
            if requested == "market" and self.config.upgrade_market_to_limit:
                transformations.append("Upgraded market order to limit (market closed)")
                return "limit"
            return requested

        if session in EXTENDED_SESSIONS:
            if requested == "market" and self.config.upgrade_market_to_limit:
                transformations.append(f"Upgraded market to limit order ({session})")
                return "limit"
            if requested == "stop":
                transformations.append(f"Upgraded stop to stop_limit ({session})")
                return "stop_limit"
            if requested not in ("limit", "stop_limit"):
                transformations.append(f"Changed {requested} to limit (not supported in {session})")
                return "limit"

        return requested

    def _limit_price(
        self,
        order: SubmitOrderPayload,
        price: PriceData | None,
        extended: bool,
        transformations: list[str],
    ) -> str | None:
        if price is None:
            return None

        base = price.reference
        if not base:
            return None
        buffer = self.config.extended_buffer_pct if extended else self.config.buffer_pct
        if order.side == "buy":
            computed = base * (1 + buffer / 100)
            sign = "+"
        else:
            computed = base * (1 - buffer / 100)
            sign = "-"
        limit = _format_price(computed)
        transformations.append(f"Auto-calculated {order.side} limit: ${limit} ({sign}{buffer}% buffer)")
        return limit

    @staticmethod
    def _select_tif(
        order: SubmitOrderPayload,
        order_type: str,
        session: str,
        crypto: bool,
        extended: bool,
        transformations: list[str],
    ) -> str:
        requested = order.time_in_force

        if crypto:
            if requested not in ("gtc", "ioc"):
                transformations.append(f"Changed crypto TIF from '{requested}' to 'gtc'")
                return "gtc"
            return requested

        if order_type == "market" and requested == "gtc":
            transformations.append("Changed market order TIF from 'gtc' to 'day' (not allowed)")
            return "day"

        if extended:
            if requested != "day":
                transformations.append(f"Forced TIF to 'day' for extended hours ({session})")
            return "day"

        if order.order_class == "bracket" and requested != "day":
            transformations.append("Forced bracket order TIF to 'day'")
            return "day"

        if session == CLOSED and requested in ("ioc", "fok"):
            transformations.append("Changed TIF from 'ioc'/'fok' to 'day' (market closed)")
            return "day"

        return requested
