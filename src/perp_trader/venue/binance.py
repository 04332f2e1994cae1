"""Binance USDT-M futures venue on python-binance's AsyncClient."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from decimal import ROUND_DOWN, Decimal
from typing import Any, TypeVar

from binance import AsyncClient  # type: ignore[import-untyped]
from binance.exceptions import (  # type: ignore[import-untyped]
    BinanceAPIException,
    BinanceRequestException,
)

from perp_trader.config import Settings
from perp_trader.errors import DataFetchError, VenueRejectionError
from perp_trader.symbols import to_exchange_symbol
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import (
    BalanceEntry,
    MarginMode,
    OrderParams,
    OrderSide,
    OrderType,
    Ticker,
    VenueOrder,
    VenuePosition,
)

T = TypeVar("T")

_ORDER_TYPE_MAP: dict[str, str] = {
    "market": "MARKET",
    "limit": "LIMIT",
    "STOP_MARKET": "STOP_MARKET",
    "TAKE_PROFIT_MARKET": "TAKE_PROFIT_MARKET",
}

_STATUS_MAP: dict[str, str] = {
    "NEW": "open",
    "PARTIALLY_FILLED": "open",
    "FILLED": "closed",
    "CANCELED": "canceled",
    "EXPIRED": "expired",
    "REJECTED": "rejected",
}


class BinanceFuturesVenue:
    """Live venue; reads raise ``DataFetchError``, writes raise ``VenueRejectionError``."""

    _INTERVAL_MAP = {
        "1m": AsyncClient.KLINE_INTERVAL_1MINUTE,
        "3m": AsyncClient.KLINE_INTERVAL_3MINUTE,
        "5m": AsyncClient.KLINE_INTERVAL_5MINUTE,
        "15m": AsyncClient.KLINE_INTERVAL_15MINUTE,
        "1h": AsyncClient.KLINE_INTERVAL_1HOUR,
        "4h": AsyncClient.KLINE_INTERVAL_4HOUR,
        "1d": AsyncClient.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, client: AsyncClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings
        self._quote = settings.quote_currency
        self._timeout = settings.venue_timeout
        self._filters: dict[str, tuple[Decimal, Decimal]] | None = None
        self._logger = get_logger("perp_trader.venue.binance")

    @classmethod
    async def create(cls, settings: Settings) -> BinanceFuturesVenue:
        client = await AsyncClient.create(
            api_key=settings.binance_api_key or None,
            api_secret=settings.binance_api_secret or None,
            testnet=settings.binance_testnet,
        )
        return cls(client, settings)

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------
    async def fetch_ticker(self, symbol: str) -> Ticker:
        payload = await self._read(
            self._client.futures_symbol_ticker(symbol=self._wire(symbol)), "ticker", symbol
        )
        price = float(payload["price"])
        return Ticker(symbol=symbol, last=price, close=price)

    async def fetch_ohlcv(
        self,
        symbol: str,
        interval: str,
        since: int | None = None,
        limit: int = 100,
    ) -> list[list[float]]:
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise DataFetchError(f"unsupported_interval: {interval}")
        kwargs: dict[str, Any] = {
            "symbol": self._wire(symbol),
            "interval": resolved_interval,
            "limit": limit,
        }
        if since is not None:
            kwargs["startTime"] = since
        rows = await self._read(self._client.futures_klines(**kwargs), "ohlcv", symbol)
        return [
            [float(row[0]), float(row[1]), float(row[2]), float(row[3]), float(row[4]), float(row[5])]
            for row in rows
        ]

    async def fetch_open_interest(self, symbol: str) -> float:
        payload = await self._read(
            self._client.futures_open_interest(symbol=self._wire(symbol)), "open_interest", symbol
        )
        return float(payload.get("openInterest", 0.0))

    async def fetch_funding_rate(self, symbol: str) -> float:
        payload = await self._read(
            self._client.futures_mark_price(symbol=self._wire(symbol)), "funding_rate", symbol
        )
        return float(payload.get("lastFundingRate", 0.0))

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------
    async def fetch_balance(self) -> dict[str, BalanceEntry]:
        rows = await self._read(self._client.futures_account_balance(), "balance", None)
        balances: dict[str, BalanceEntry] = {}
        for row in rows:
            total = float(row.get("balance", 0.0))
            free = float(row.get("availableBalance", total))
            balances[str(row["asset"])] = BalanceEntry(
                total=total, free=free, used=max(0.0, total - free)
            )
        return balances

    async def fetch_positions(self, symbols: list[str] | None = None) -> list[VenuePosition]:
        rows = await self._read(self._client.futures_position_information(), "positions", None)
        wanted = {self._wire(symbol): symbol for symbol in symbols} if symbols else None
        positions: list[VenuePosition] = []
        for row in rows:
            wire_symbol = str(row.get("symbol", ""))
            if wanted is not None and wire_symbol not in wanted:
                continue
            amount = float(row.get("positionAmt", 0.0))
            if amount == 0:
                continue
            entry = float(row.get("entryPrice", 0.0))
            mark = float(row.get("markPrice", 0.0))
            leverage = float(row.get("leverage") or 1.0)
            notional = abs(float(row.get("notional", amount * mark)))
            unrealized = float(row.get("unRealizedProfit", 0.0))
            liquidation = float(row.get("liquidationPrice", 0.0))
            margin = notional / leverage if leverage > 0 else 0.0
            positions.append(
                VenuePosition(
                    symbol=wanted[wire_symbol] if wanted is not None else self._unified(wire_symbol),
                    contracts=abs(amount),
                    side="long" if amount > 0 else "short",
                    entry_price=entry,
                    mark_price=mark,
                    liquidation_price=liquidation if liquidation > 0 else None,
                    unrealized_pnl=unrealized,
                    leverage=leverage,
                    notional=notional,
                    percentage=unrealized / margin * 100 if margin > 0 else 0.0,
                )
            )
        return positions

    async def fetch_open_orders(self, symbol: str) -> list[VenueOrder]:
        rows = await self._read(
            self._client.futures_get_open_orders(symbol=self._wire(symbol)), "open_orders", symbol
        )
        return [self._parse_order(row, symbol) for row in rows]

    async def fetch_closed_orders(
        self,
        symbol: str,
        since: int | None = None,
        limit: int = 50,
    ) -> list[VenueOrder]:
        kwargs: dict[str, Any] = {"symbol": self._wire(symbol), "limit": limit}
        if since is not None:
            kwargs["startTime"] = since
        rows = await self._read(self._client.futures_get_all_orders(**kwargs), "orders", symbol)
        orders = [self._parse_order(row, symbol) for row in rows]
        return [order for order in orders if order.status != "open"]

    # ------------------------------------------------------------------
    # trading
    # ------------------------------------------------------------------
    async def set_leverage(self, leverage: int, symbol: str) -> None:
        await self._write(
            self._client.futures_change_leverage(symbol=self._wire(symbol), leverage=leverage)
        )

    async def set_margin_mode(self, mode: MarginMode, symbol: str) -> None:
        margin_type = "CROSSED" if mode == "cross" else "ISOLATED"
        await self._write(
            self._client.futures_change_margin_type(symbol=self._wire(symbol), marginType=margin_type)
        )

    async def create_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: OrderSide,
        amount: float,
        price: float | None = None,
        params: OrderParams | None = None,
    ) -> VenueOrder:
        params = params or OrderParams()
        try:
            params.validate(order_type)
        except ValueError as exc:
            raise VenueRejectionError(str(exc)) from exc

        wire_symbol = self._wire(symbol)
        step, tick = await self._symbol_filters(wire_symbol)
        request: dict[str, Any] = {
            "symbol": wire_symbol,
            "side": side.upper(),
            "type": _ORDER_TYPE_MAP[order_type],
            "quantity": _round_to_step(amount, step),
        }
        if order_type == "limit":
            if price is None:
                raise VenueRejectionError("Price is required for limit orders")
            request["price"] = _round_to_step(price, tick)
            request["timeInForce"] = "GTC"
        if params.stop_price is not None:
            request["stopPrice"] = _round_to_step(params.stop_price, tick)
        if params.reduce_only:
            request["reduceOnly"] = "true"
        if params.position_side is not None:
            request["positionSide"] = params.position_side

        payload = await self._write(self._client.futures_create_order(**request))
        return self._parse_order(payload, symbol)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._write(
            self._client.futures_cancel_order(symbol=self._wire(symbol), orderId=int(order_id))
        )

    async def close(self) -> None:
        await self._client.close_connection()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    async def _read(self, call: Awaitable[T], what: str, symbol: str | None) -> T:
        try:
            return await asyncio.wait_for(call, self._timeout)
        except asyncio.TimeoutError as exc:
            raise DataFetchError(f"{what}_timeout: {symbol or '-'}") from exc
        except BinanceAPIException as exc:
            raise DataFetchError(f"{what}_failed: {exc.message}") from exc
        except BinanceRequestException as exc:
            raise DataFetchError(f"{what}_failed: {exc.message}") from exc

    async def _write(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, self._timeout)
        except asyncio.TimeoutError as exc:
            raise VenueRejectionError("venue_call_timeout") from exc
        except BinanceAPIException as exc:
            raise VenueRejectionError(exc.message, code=exc.code) from exc
        except BinanceRequestException as exc:
            raise VenueRejectionError(exc.message) from exc

    async def _symbol_filters(self, wire_symbol: str) -> tuple[Decimal, Decimal]:
        if self._filters is None:
            info = await self._read(self._client.futures_exchange_info(), "exchange_info", None)
            filters: dict[str, tuple[Decimal, Decimal]] = {}
            for entry in info.get("symbols", []):
                step = Decimal("0")
                tick = Decimal("0")
                for item in entry.get("filters", []):
                    if item.get("filterType") == "LOT_SIZE":
                        step = Decimal(str(item["stepSize"]))
                    elif item.get("filterType") == "PRICE_FILTER":
                        tick = Decimal(str(item["tickSize"]))
                filters[str(entry["symbol"])] = (step, tick)
            self._filters = filters
        return self._filters.get(wire_symbol, (Decimal("0"), Decimal("0")))

    def _wire(self, symbol: str) -> str:
        return to_exchange_symbol(symbol, self._quote)

    def _unified(self, wire_symbol: str) -> str:
        base = wire_symbol[: -len(self._quote)] if wire_symbol.endswith(self._quote) else wire_symbol
        return f"{base}/{self._quote}"

    def _parse_order(self, row: dict[str, Any], symbol: str) -> VenueOrder:
        amount = float(row.get("origQty", 0.0))
        filled = float(row.get("executedQty", 0.0))
        price = float(row.get("price", 0.0))
        average = float(row.get("avgPrice", 0.0))
        stop_price = float(row.get("stopPrice", 0.0))
        cum_quote = float(row.get("cumQuote", 0.0))
        order_type = str(row.get("type", "MARKET"))
        return VenueOrder(
            id=str(row.get("orderId", "")),
            symbol=symbol,
            type=order_type.lower() if order_type in ("MARKET", "LIMIT") else order_type,
            side="buy" if str(row.get("side", "BUY")).upper() == "BUY" else "sell",
            amount=amount,
            price=price or None,
            average=average or None,
            cost=cum_quote or (filled * average if average else None),
            filled=filled,
            remaining=max(0.0, amount - filled),
            status=_STATUS_MAP.get(str(row.get("status", "NEW")), "open"),
            timestamp=int(row["updateTime"]) if row.get("updateTime") else None,
            stop_price=stop_price or None,
            reduce_only=bool(row.get("reduceOnly", False)),
            info=row,
        )


def _round_to_step(value: float, step: Decimal) -> str:
    """Floor ``value`` to the venue step and format it without exponent."""
    decimal_value = Decimal(str(value))
    if step > 0:
        decimal_value = (decimal_value / step).to_integral_value(rounding=ROUND_DOWN) * step
    return format(decimal_value.normalize(), "f")
