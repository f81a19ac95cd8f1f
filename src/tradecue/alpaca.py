"""Alpaca REST implementation of the broker gateway."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tradecue.collaborators import BrokerOrder, BrokerPosition, OrderRequest, PriceData
from tradecue.config import AlpacaConfig
from tradecue.errors import BrokerError

logger = logging.getLogger(__name__)


def _float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _snapshot_price(snapshot: dict[str, Any]) -> PriceData:
    quote = snapshot.get("latestQuote") or {}
    trade = snapshot.get("latestTrade") or {}
    return PriceData(bid=_float(quote.get("bp")), ask=_float(quote.get("ap")), last=_float(trade.get("p")))


class AlpacaGateway:
    """
    Broker gateway backed by Alpaca's trading and market-data APIs.

    Non-2xx responses raise BrokerError("HTTP <status>: <message>").
    Transport failures surface as httpx exceptions.

    Example:
        async with AlpacaGateway(AlpacaConfig.from_env()) as gateway:
            orders = await gateway.get_orders("open")
    """

    def __init__(self, config: AlpacaConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._headers = {
            "APCA-API-KEY-ID": config.api_key,
            "APCA-API-SECRET-KEY": config.secret_key,
        }

    async def __aenter__(self) -> AlpacaGateway:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        resp = await self._client.request(method, url, params=params, json=json, headers=self._headers)
        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = body.get("message") or resp.text
                code = body.get("code")
            except ValueError:
                message, code = resp.text or resp.reason_phrase, None
            raise BrokerError(resp.status_code, str(message), code=code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _trading(self, path: str) -> str:
        return f"{self.config.trading_url.rstrip('/')}{path}"

    def _data(self, path: str) -> str:
        return f"{self.config.data_url.rstrip('/')}{path}"

    # --- Orders ---

    async def create_order(self, request: OrderRequest) -> BrokerOrder:
        data = await self._request("POST", self._trading("/v2/orders"), json=request.to_params())
        return BrokerOrder.from_api(data)

    async def cancel_order(self, order_id: str) -> None:
        await self._request("DELETE", self._trading(f"/v2/orders/{order_id}"))

    async def cancel_all_orders(self) -> None:
        await self._request("DELETE", self._trading("/v2/orders"))

    async def get_orders(self, scope: str = "open", limit: int = 100) -> list[BrokerOrder]:
        data = await self._request(
            "GET",
            self._trading("/v2/orders"),
            params={"status": scope, "limit": limit, "direction": "desc"},
        )
        return [BrokerOrder.from_api(o) for o in data or []]

    # --- Positions ---

    async def get_positions(self) -> list[BrokerPosition]:
        data = await self._request("GET", self._trading("/v2/positions"))
        return [BrokerPosition.from_api(p) for p in data or []]

    async def close_position(self, symbol: str) -> BrokerOrder | None:
        path_symbol = symbol.replace("/", "").upper()
        data = await self._request("DELETE", self._trading(f"/v2/positions/{path_symbol}"))
        return BrokerOrder.from_api(data) if data else None

    # --- Market data ---

    async def get_snapshots(self, symbols: list[str]) -> dict[str, PriceData]:
        data = await self._request(
            "GET", self._data("/v2/stocks/snapshots"), params={"symbols": ",".join(symbols)}
        )
        return {sym: _snapshot_price(snap or {}) for sym, snap in (data or {}).items()}

    async def get_crypto_snapshots(self, symbols: list[str]) -> dict[str, PriceData]:
        data = await self._request(
            "GET",
            self._data("/v1beta3/crypto/us/snapshots"),
            params={"symbols": ",".join(symbols)},
        )
        snapshots = (data or {}).get("snapshots", {})
        return {sym: _snapshot_price(snap or {}) for sym, snap in snapshots.items()}

    # --- Assets ---

    async def get_asset(self, symbol: str) -> dict[str, Any]:
        return await self._request("GET", self._trading(f"/v2/assets/{symbol.replace('/', '')}"))

    async def list_assets(self, asset_class: str = "us_equity") -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            self._trading("/v2/assets"),
            params={"status": "active", "asset_class": asset_class},
        )
        return list(data or [])
