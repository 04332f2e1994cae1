"""Simulated futures venue with optional persistent local state.

Prices come from ``set_price`` or from an attached market-data venue. Market
orders fill at the current price (plus optional slippage), conditional orders
rest until a price update crosses their trigger.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from perp_trader.errors import DataFetchError, VenueRejectionError
from perp_trader.utils.logging import get_logger
from perp_trader.venue.base import (
    CONDITIONAL_ORDER_TYPES,
    BalanceEntry,
    MarginMode,
    OrderParams,
    OrderSide,
    OrderType,
    Ticker,
    Venue,
    VenueOrder,
    VenuePosition,
)

_EPSILON = 1e-12
_MAX_CLOSED_ORDERS = 500


@dataclass(slots=True)
class _PaperPosition:
    symbol: str
    contracts: float  # signed
    entry_price: float
    leverage: int


@dataclass(slots=True)
class _PaperState:
    wallet_balance: float
    initial_balance: float
    realized_pnl: float = 0.0
    next_order_id: int = 1
    positions: dict[str, _PaperPosition] = field(default_factory=dict)
    open_orders: dict[str, VenueOrder] = field(default_factory=dict)
    closed_orders: list[VenueOrder] = field(default_factory=list)
    leverage: dict[str, int] = field(default_factory=dict)
    margin_mode: dict[str, str] = field(default_factory=dict)


class PaperVenue:
    """In-memory venue implementing the ``Venue`` protocol."""

    def __init__(
        self,
        initial_balance: float = 10_000.0,
        *,
        quote_currency: str = "USDT",
        state_file: Path | None = None,
        market: Venue | None = None,
        slippage_bps: float = 0.0,
        default_leverage: int = 1,
    ) -> None:
        self._quote = quote_currency.upper()
        self._state_file = state_file
        self._market = market
        self._slippage_bps = slippage_bps
        self._default_leverage = default_leverage
        self._prices: dict[str, float] = {}
        self._candles: dict[tuple[str, str], list[list[float]]] = {}
        self._open_interest: dict[str, float] = {}
        self._funding: dict[str, float] = {}
        self._logger = get_logger("perp_trader.venue.paper")
        self._state = self._load_state(initial_balance)

    # ------------------------------------------------------------------
    # simulation controls
    # ------------------------------------------------------------------
    def set_price(self, symbol: str, price: float) -> list[VenueOrder]:
        """Set the last price and fill any resting orders it triggers."""
        if price <= 0:
            raise ValueError("price_must_be_positive")
        self._prices[symbol] = float(price)
        return self._trigger_resting_orders(symbol, float(price))

    def set_candles(self, symbol: str, interval: str, rows: list[list[float]]) -> None:
        self._candles[(symbol, interval)] = [list(row) for row in rows]
        if rows:
            self._prices.setdefault(symbol, float(rows[-1][4]))

    def set_open_interest(self, symbol: str, value: float) -> None:
        self._open_interest[symbol] = value

    def set_funding_rate(self, symbol: str, value: float) -> None:
        self._funding[symbol] = value

    @property
    def wallet_balance(self) -> float:
        return self._state.wallet_balance

    @property
    def realized_pnl(self) -> float:
        return self._state.realized_pnl

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------
    async def fetch_ticker(self, symbol: str) -> Ticker:
        if self._market is not None:
            ticker = await self._market.fetch_ticker(symbol)
            self.set_price(symbol, ticker.last)
            return ticker
        price = self._prices.get(symbol)
        if price is None:
            raise DataFetchError(f"no_price_for_symbol: {symbol}")
        return Ticker(symbol=symbol, last=price, close=price)

    async def fetch_ohlcv(
        self,
        symbol: str,
        interval: str,
        since: int | None = None,
        limit: int = 100,
    ) -> list[list[float]]:
        if self._market is not None:
            return await self._market.fetch_ohlcv(symbol, interval, since, limit)
        rows = self._candles.get((symbol, interval))
        if rows is None:
            raise DataFetchError(f"no_candles_for_symbol: {symbol} {interval}")
        if since is not None:
            rows = [row for row in rows if row[0] >= since]
        return [list(row) for row in rows[-limit:]]

    async def fetch_open_interest(self, symbol: str) -> float:
        if self._market is not None:
            return await self._market.fetch_open_interest(symbol)
        return self._open_interest.get(symbol, 0.0)

    async def fetch_funding_rate(self, symbol: str) -> float:
        if self._market is not None:
            return await self._market.fetch_funding_rate(symbol)
        return self._funding.get(symbol, 0.0)

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------
    async def fetch_balance(self) -> dict[str, BalanceEntry]:
        used = sum(
            abs(position.contracts) * position.entry_price / position.leverage
            for position in self._state.positions.values()
        )
        total = self._state.wallet_balance
        return {self._quote: BalanceEntry(total=total, free=max(0.0, total - used), used=used)}

    async def fetch_positions(self, symbols: list[str] | None = None) -> list[VenuePosition]:
        positions: list[VenuePosition] = []
        for symbol, position in list(self._state.positions.items()):
            if symbols is not None and symbol not in symbols:
                continue
            if self._market is not None:
                await self.fetch_ticker(symbol)
            positions.append(self._to_venue_position(position))
        return positions

    async def fetch_open_orders(self, symbol: str) -> list[VenueOrder]:
        return [order for order in self._state.open_orders.values() if order.symbol == symbol]

    async def fetch_closed_orders(
        self,
        symbol: str,
        since: int | None = None,
        limit: int = 50,
    ) -> list[VenueOrder]:
        rows = [
            order
            for order in self._state.closed_orders
            if order.symbol == symbol and (since is None or (order.timestamp or 0) >= since)
        ]
        return rows[-limit:]

    # ------------------------------------------------------------------
    # trading
    # ------------------------------------------------------------------
    async def set_leverage(self, leverage: int, symbol: str) -> None:
        if leverage < 1 or leverage > 125:
            raise VenueRejectionError(f"Leverage {leverage} is not valid", code=-4028)
        self._state.leverage[symbol] = int(leverage)
        self._persist()

    async def set_margin_mode(self, mode: MarginMode, symbol: str) -> None:
        self._state.margin_mode[symbol] = mode
        self._persist()

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
        if amount <= 0:
            raise VenueRejectionError("Quantity less than or equal to zero.", code=-4003)

        order = VenueOrder(
            id=self._next_order_id(),
            symbol=symbol,
            type=order_type,
            side=side,
            amount=float(amount),
            price=price,
            remaining=float(amount),
            timestamp=_now_ms(),
            stop_price=params.stop_price,
            reduce_only=params.reduce_only,
        )

        if order_type in CONDITIONAL_ORDER_TYPES:
            self._state.open_orders[order.id] = order
            self._persist()
            return order

        if order_type == "limit":
            if price is None or price <= 0:
                raise VenueRejectionError("Limit order requires a positive price.", code=-1102)
            last = self._prices.get(symbol)
            marketable = last is not None and (
                (side == "buy" and last <= price) or (side == "sell" and last >= price)
            )
            if not marketable:
                self._state.open_orders[order.id] = order
                self._persist()
                return order
            fill_price = float(last)  # type: ignore[arg-type]
        else:
            last = self._prices.get(symbol)
            if last is None:
                last = (await self.fetch_ticker(symbol)).last
            fill_price = self._apply_slippage(last, side)

        self._fill(order, fill_price)
        return order

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        order = self._state.open_orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise VenueRejectionError("Unknown order sent.", code=-2011)
        del self._state.open_orders[order_id]
        order.status = "canceled"
        self._archive(order)
        self._persist()

    async def close(self) -> None:
        if self._market is not None:
            await self._market.close()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _fill(self, order: VenueOrder, fill_price: float) -> None:
        realized = self._apply_fill(
            order.symbol,
            order.side,
            order.amount,
            fill_price,
            reduce_only=order.reduce_only,
        )
        order.status = "closed"
        order.average = fill_price
        order.filled = order.amount
        order.remaining = 0.0
        order.cost = order.amount * fill_price
        order.info = {"realizedPnl": realized}
        self._archive(order)
        self._persist()

    def _apply_fill(
        self,
        symbol: str,
        side: OrderSide,
        amount: float,
        price: float,
        *,
        reduce_only: bool,
    ) -> float:
        signed = amount if side == "buy" else -amount
        position = self._state.positions.get(symbol)
        current = position.contracts if position is not None else 0.0

        if reduce_only and (
            abs(current) <= _EPSILON
            or current * signed > 0
            or amount > abs(current) * (1 + 1e-9) + _EPSILON
        ):
            raise VenueRejectionError("ReduceOnly Order is rejected.", code=-2022)

        if position is None or current * signed > 0:
            leverage = self._state.leverage.get(symbol, self._default_leverage)
            required_margin = amount * price / leverage
            balance = self._free_margin()
            if required_margin > balance + _EPSILON:
                raise VenueRejectionError("Margin is insufficient.", code=-2019)
            if position is None:
                self._state.positions[symbol] = _PaperPosition(
                    symbol=symbol,
                    contracts=signed,
                    entry_price=price,
                    leverage=leverage,
                )
            else:
                new_contracts = current + signed
                position.entry_price = (
                    abs(current) * position.entry_price + amount * price
                ) / abs(new_contracts)
                position.contracts = new_contracts
            return 0.0

        closing = min(amount, abs(current))
        direction = 1.0 if current > 0 else -1.0
        realized = (price - position.entry_price) * closing * direction
        self._state.wallet_balance += realized
        self._state.realized_pnl += realized

        remaining = current + signed
        if abs(remaining) <= _EPSILON:
            del self._state.positions[symbol]
        elif remaining * current > 0:
            position.contracts = remaining
        else:
            position.contracts = remaining
            position.entry_price = price
        return realized

    def _trigger_resting_orders(self, symbol: str, price: float) -> list[VenueOrder]:
        triggered: list[VenueOrder] = []
        for order in list(self._state.open_orders.values()):
            if order.symbol != symbol or not _is_triggered(order, price):
                continue
            del self._state.open_orders[order.id]
            fill_price = price if order.type != "limit" else float(order.price or price)
            try:
                self._fill(order, fill_price)
            except VenueRejectionError as exc:
                order.status = "rejected"
                order.info = {"error": exc.message}
                self._archive(order)
                self._persist()
                self._logger.warning(
                    "paper_order_rejected_on_trigger",
                    symbol=symbol,
                    order_id=order.id,
                    error=exc.message,
                )
            triggered.append(order)
        return triggered

    def _free_margin(self) -> float:
        used = sum(
            abs(p.contracts) * p.entry_price / p.leverage for p in self._state.positions.values()
        )
        return self._state.wallet_balance - used

    def _apply_slippage(self, price: float, side: OrderSide) -> float:
        factor = self._slippage_bps / 10_000.0
        return price * (1.0 + factor) if side == "buy" else price * (1.0 - factor)

    def _to_venue_position(self, position: _PaperPosition) -> VenuePosition:
        mark = self._prices.get(position.symbol, position.entry_price)
        contracts = abs(position.contracts)
        is_long = position.contracts > 0
        unrealized = (mark - position.entry_price) * position.contracts
        margin = contracts * position.entry_price / position.leverage
        liquidation = position.entry_price * (
            1 - 1 / position.leverage if is_long else 1 + 1 / position.leverage
        )
        return VenuePosition(
            symbol=position.symbol,
            contracts=contracts,
            side="long" if is_long else "short",
            entry_price=position.entry_price,
            mark_price=mark,
            liquidation_price=liquidation if position.leverage > 1 else None,
            unrealized_pnl=unrealized,
            leverage=float(position.leverage),
            notional=contracts * mark,
            percentage=unrealized / margin * 100 if margin > 0 else 0.0,
        )

    def _next_order_id(self) -> str:
        order_id = f"paper-{self._state.next_order_id}"
        self._state.next_order_id += 1
        return order_id

    def _archive(self, order: VenueOrder) -> None:
        self._state.closed_orders.append(order)
        if len(self._state.closed_orders) > _MAX_CLOSED_ORDERS:
            del self._state.closed_orders[: -_MAX_CLOSED_ORDERS]

    def _load_state(self, initial_balance: float) -> _PaperState:
        if self._state_file is None or not self._state_file.exists():
            return _PaperState(wallet_balance=initial_balance, initial_balance=initial_balance)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions = {
            key: _PaperPosition(**value) for key, value in raw.get("positions", {}).items()
        }
        open_orders = {key: VenueOrder(**value) for key, value in raw.get("open_orders", {}).items()}
        closed_orders = [VenueOrder(**value) for value in raw.get("closed_orders", [])]
        return _PaperState(
            wallet_balance=float(raw.get("wallet_balance", initial_balance)),
            initial_balance=float(raw.get("initial_balance", initial_balance)),
            realized_pnl=float(raw.get("realized_pnl", 0.0)),
            next_order_id=int(raw.get("next_order_id", 1)),
            positions=positions,
            open_orders=open_orders,
            closed_orders=closed_orders,
            leverage={key: int(value) for key, value in raw.get("leverage", {}).items()},
            margin_mode=dict(raw.get("margin_mode", {})),
        )

    def _persist(self) -> None:
        if self._state_file is None:
            return
        payload: dict[str, Any] = {
            "wallet_balance": self._state.wallet_balance,
            "initial_balance": self._state.initial_balance,
            "realized_pnl": self._state.realized_pnl,
            "next_order_id": self._state.next_order_id,
            "positions": {key: asdict(value) for key, value in self._state.positions.items()},
            "open_orders": {key: asdict(value) for key, value in self._state.open_orders.items()},
            "closed_orders": [asdict(order) for order in self._state.closed_orders],
            "leverage": self._state.leverage,
            "margin_mode": self._state.margin_mode,
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")


def _is_triggered(order: VenueOrder, price: float) -> bool:
    if order.type == "limit":
        limit = order.price or 0.0
        return price <= limit if order.side == "buy" else price >= limit
    stop = order.stop_price or 0.0
    if order.type == "STOP_MARKET":
        return price >= stop if order.side == "buy" else price <= stop
    if order.type == "TAKE_PROFIT_MARKET":
        return price <= stop if order.side == "buy" else price >= stop
    return False


def _now_ms() -> int:
    return int(time.time() * 1000)
