"""Broker adapters: account, positions, prices and orders behind one interface.

Only Alpaca is wired up. Each adapter advertises what it can trade through
BrokerCapabilities, and create_broker_adapter refuses to hand a fund an
adapter that cannot serve its mode or asset classes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from fundkeeper.shell.config import BrokerConfig
from fundkeeper.shell.contract import OrderKind, TradeSide

if TYPE_CHECKING:
    from fundkeeper.shell.funds import FundConfig

log = structlog.get_logger()


class BrokerError(RuntimeError):
    """Broker rejected a request or could not be reached."""


@dataclass(frozen=True)
class BrokerCapabilities:
    stocks: bool = False
    etfs: bool = False
    options: bool = False
    crypto: bool = False
    forex: bool = False
    paper_trading: bool = False
    live_trading: bool = False
    streaming: bool = False

    def supports(self, asset_class: str) -> bool:
        return bool(getattr(self, asset_class, False))


@dataclass(frozen=True)
class BrokerAccount:
    cash: float
    portfolio_value: float
    buying_power: float
    equity: float
    currency: str = "USD"


@dataclass(frozen=True)
class BrokerPosition:
    symbol: str
    shares: float
    avg_cost: float
    current_price: float
    market_value: float
    unrealized_pnl: float
    unrealized_pnl_pct: float
    side: str = "long"


@dataclass(frozen=True)
class BrokerOrder:
    id: str
    symbol: str
    side: TradeSide
    qty: float
    type: OrderKind
    status: str
    created_at: str
    limit_price: float | None = None
    stop_price: float | None = None
    filled_qty: float | None = None
    filled_avg_price: float | None = None


class BrokerAdapter(ABC):
    name: str
    capabilities: BrokerCapabilities

    @abstractmethod
    async def get_account(self) -> BrokerAccount: ...

    @abstractmethod
    async def get_positions(self) -> list[BrokerPosition]: ...

    @abstractmethod
    async def get_position(self, symbol: str) -> BrokerPosition | None: ...

    @abstractmethod
    async def get_latest_prices(self, symbols: list[str]) -> dict[str, float]:
        """Latest trade price per symbol. Symbols with no quote are left out."""

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        qty: float,
        side: TradeSide,
        order_type: OrderKind = OrderKind.MARKET,
        limit_price: float | None = None,
        stop_price: float | None = None,
        time_in_force: str = "day",
    ) -> BrokerOrder: ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None: ...

    @abstractmethod
    async def get_orders(self, status: str | None = None) -> list[BrokerOrder]: ...

    async def place_market_sell(self, symbol: str, qty: float) -> BrokerOrder:
        return await self.place_order(symbol, qty, TradeSide.SELL, OrderKind.MARKET)

    async def close(self) -> None:
        pass


def _f(value: Any) -> float | None:
    return float(value) if value not in (None, "") else None


class AlpacaBroker(BrokerAdapter):
    """Alpaca trading + market data REST API."""

    name = "alpaca"
    capabilities = BrokerCapabilities(
        stocks=True,
        etfs=True,
        options=True,
        crypto=True,
        forex=False,
        paper_trading=True,
        live_trading=True,
        streaming=True,
    )

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str,
        data_url: str = "https://data.alpaca.markets",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._data_url = data_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": secret_key,
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BrokerError(f"Alpaca request failed: {method} {url}: {e}") from e
        if resp.status_code >= 400:
            raise BrokerError(f"Alpaca API error {resp.status_code}: {resp.text}")
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _trading(self, method: str, path: str, **kwargs) -> Any:
        return await self._request(method, f"{self._base_url}{path}", **kwargs)

    @staticmethod
    def _position(p: dict) -> BrokerPosition:
        return BrokerPosition(
            symbol=p["symbol"],
            shares=float(p["qty"]),
            avg_cost=float(p["avg_entry_price"]),
            current_price=float(p["current_price"]),
            market_value=float(p["market_value"]),
            unrealized_pnl=float(p["unrealized_pl"]),
            unrealized_pnl_pct=float(p["unrealized_plpc"]) * 100,
            side="short" if p.get("side") == "short" else "long",
        )

    @staticmethod
    def _order(o: dict) -> BrokerOrder:
        return BrokerOrder(
            id=o["id"],
            symbol=o["symbol"],
            side=TradeSide(o["side"]),
            qty=float(o.get("qty") or 0),
            type=OrderKind(o["type"]),
            status=o["status"],
            created_at=o.get("created_at", ""),
            limit_price=_f(o.get("limit_price")),
            stop_price=_f(o.get("stop_price")),
            filled_qty=_f(o.get("filled_qty")),
            filled_avg_price=_f(o.get("filled_avg_price")),
        )

    async def get_account(self) -> BrokerAccount:
        data = await self._trading("GET", "/v2/account")
        return BrokerAccount(
            cash=float(data["cash"]),
            portfolio_value=float(data["portfolio_value"]),
            buying_power=float(data["buying_power"]),
            equity=float(data["equity"]),
            currency=data.get("currency") or "USD",
        )

    async def get_positions(self) -> list[BrokerPosition]:
        data = await self._trading("GET", "/v2/positions")
        return [self._position(p) for p in data]

    async def get_position(self, symbol: str) -> BrokerPosition | None:
        try:
            data = await self._trading("GET", f"/v2/positions/{symbol}")
        except BrokerError as e:
            log.debug("broker.position_missing", symbol=symbol, error=str(e))
            return None
        return self._position(data)

    async def get_latest_prices(self, symbols: list[str]) -> dict[str, float]:
        if not symbols:
            return {}
        data = await self._request(
            "GET",
            f"{self._data_url}/v2/stocks/trades/latest",
            params={"symbols": ",".join(symbols)},
        )
        trades = (data or {}).get("trades", {})
        return {sym: float(t["p"]) for sym, t in trades.items() if t and t.get("p") is not None}

    async def place_order(
        self,
        symbol: str,
        qty: float,
        side: TradeSide,
        order_type: OrderKind = OrderKind.MARKET,
        limit_price: float | None = None,
        stop_price: float | None = None,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        body: dict[str, str] = {
            "symbol": symbol,
            "qty": str(qty),
            "side": side.value,
            "type": order_type.value,
            "time_in_force": time_in_force,
        }
        if limit_price is not None:
            body["limit_price"] = str(limit_price)
        if stop_price is not None:
            body["stop_price"] = str(stop_price)

        data = await self._trading("POST", "/v2/orders", json=body)
        order = self._order(data)
        log.info("broker.order_placed", symbol=symbol, side=side.value, qty=qty, type=order_type.value, id=order.id)
        return order

    async def cancel_order(self, order_id: str) -> None:
        await self._trading("DELETE", f"/v2/orders/{order_id}")

    async def get_orders(self, status: str | None = None) -> list[BrokerOrder]:
        params = {"status": status} if status else None
        data = await self._trading("GET", "/v2/orders", params=params)
        return [self._order(o) for o in data]


def check_capabilities(adapter: BrokerAdapter | type[BrokerAdapter], mode: str, asset_classes: list[str]) -> None:
    """Raise BrokerError if the adapter cannot serve this mode or these asset classes."""
    caps = adapter.capabilities
    if mode == "live" and not caps.live_trading:
        raise BrokerError(f"Broker '{adapter.name}' does not support live trading")
    if mode == "paper" and not caps.paper_trading:
        raise BrokerError(f"Broker '{adapter.name}' does not support paper trading")
    missing = [a for a in asset_classes if not caps.supports(a)]
    if missing:
        raise BrokerError(f"Broker '{adapter.name}' cannot trade: {', '.join(missing)}")


def create_broker_adapter(config: BrokerConfig, fund: FundConfig) -> BrokerAdapter:
    """Build the adapter a FundConfig asks for, using global credentials."""
    provider = fund.broker_provider
    mode = fund.broker_mode or config.mode

    if provider == "manual":
        raise BrokerError("Manual broker does not support automated trading")
    if provider != "alpaca":
        raise BrokerError(f"Unsupported broker provider: {provider}")

    check_capabilities(AlpacaBroker, mode, fund.asset_classes)
    if not config.api_key or not config.secret_key:
        raise BrokerError("Alpaca API credentials not configured (ALPACA_API_KEY / ALPACA_SECRET_KEY)")
    return AlpacaBroker(
        api_key=config.api_key,
        secret_key=config.secret_key,
        base_url=config.live_url if mode == "live" else config.paper_url,
        data_url=config.data_url,
        timeout=config.request_timeout_seconds,
    )
