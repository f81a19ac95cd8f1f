"""Concrete enforcement and tradability services for the operator worker."""

from __future__ import annotations

import logging
import os
from typing import Iterable, Mapping

from tradecue.alpaca import AlpacaGateway
from tradecue.collaborators import Eligibility, Tradability, UniverseSyncResult
from tradecue.errors import BrokerError

logger = logging.getLogger(__name__)


class AllowListEnforcement:
    """Approves symbols from a fixed allow list. An empty list approves everything."""

    def __init__(self, approved: Iterable[str] = ()) -> None:
        self.approved = {s.strip().upper() for s in approved if s.strip()}

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> AllowListEnforcement:
        env = os.environ if env is None else env
        return cls((env.get("TRADECUE_APPROVED_SYMBOLS") or "").split(","))

    async def can_trade_symbol(self, symbol: str, trace_id: str | None = None) -> Eligibility:
        if not self.approved or symbol.upper() in self.approved:
            return Eligibility(eligible=True)
        return Eligibility(eligible=False, reason=f"{symbol} is not on the approved list")


class AlpacaTradability:
    """Checks tradability against Alpaca's asset list, cached between syncs."""

    def __init__(self, gateway: AlpacaGateway) -> None:
        self.gateway = gateway
        self._tradable: dict[str, bool] = {}

    async def validate_symbol_tradable(self, symbol: str) -> Tradability:
        key = symbol.replace("/", "").upper()
        if key not in self._tradable:
            try:
                asset = await self.gateway.get_asset(symbol)
            except BrokerError as e:
                if e.status_code == 404:
                    return Tradability(tradable=False, reason=f"{symbol} is not in the broker universe")
                raise
            self._tradable[key] = bool(asset.get("tradable")) and asset.get("status") == "active"

        if self._tradable[key]:
            return Tradability(tradable=True)
        return Tradability(tradable=False, reason=f"{symbol} is not tradable at the broker")

    async def sync_asset_universe(self, asset_class: str) -> UniverseSyncResult:
        result = UniverseSyncResult()
        for asset in await self.gateway.list_assets(asset_class):
            try:
                key = str(asset["symbol"]).replace("/", "").upper()
            except KeyError:
                result.errors.append(f"Asset without symbol: {asset.get('id', '?')}")
                continue
            tradable = bool(asset.get("tradable")) and asset.get("status") == "active"
            self._tradable[key] = tradable
            result.synced += 1
            result.tradable += int(tradable)
        logger.debug("Asset universe %s: %d synced", asset_class, result.synced)
        return result
