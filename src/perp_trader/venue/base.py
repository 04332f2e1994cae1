"""Venue protocol and the normalized records it exchanges with the core.

Venue implementations accept unified market symbols (``BTC/USDT``) and return
plain dataclasses, so the rest of the agent never touches a wire payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

OrderType = Literal["market", "limit", "STOP_MARKET", "TAKE_PROFIT_MARKET"]
OrderSide = Literal["buy", "sell"]
MarginMode = Literal["cross", "isolated"]

CONDITIONAL_ORDER_TYPES: frozenset[str] = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET"})


@dataclass(slots=True, frozen=True)
class OrderParams:
    """Closed set of optional order parameters."""

    stop_price: float | None = None
    reduce_only: bool = False
    position_side: Literal["BOTH", "LONG", "SHORT"] | None = None

    def validate(self, order_type: OrderType) -> None:
        """Reject combinations the venue would refuse anyway."""
        if order_type in CONDITIONAL_ORDER_TYPES:
            if self.stop_price is None or self.stop_price <= 0:
                raise ValueError(f"{order_type} requires a positive stop_price")
        elif self.stop_price is not None:
            raise ValueError(f"stop_price is not valid for {order_type} orders")


@dataclass(slots=True)
class Ticker:
    symbol: str
    last: float
    close: float


@dataclass(slots=True)
class BalanceEntry:
    total: float
    free: float
    used: float


@dataclass(slots=True)
class VenuePosition:
    """Venue position; ``contracts`` is unsigned and ``side`` carries direction."""

    symbol: str
    contracts: float
    side: Literal["long", "short"] | None
    entry_price: float
    mark_price: float
    liquidation_price: float | None
    unrealized_pnl: float
    leverage: float
    notional: float
    percentage: float

    @property
    def signed_contracts(self) -> float:
        if self.side == "short":
            return -abs(self.contracts)
        return abs(self.contracts)


@dataclass(slots=True)
class VenueOrder:
    id: str
    symbol: str
    type: str
    side: OrderSide
    amount: float
    price: float | None = None
    average: float | None = None
    cost: float | None = None
    filled: float = 0.0
    remaining: float = 0.0
    status: str = "open"
    timestamp: int | None = None
    stop_price: float | None = None
    reduce_only: bool = False
    info: dict[str, Any] = field(default_factory=dict)


class Venue(Protocol):
    """Asynchronous futures venue consumed by the agent."""

    async def fetch_ticker(self, symbol: str) -> Ticker: ...

    async def fetch_ohlcv(
        self,
        symbol: str,
        interval: str,
        since: int | None = None,
        limit: int = 100,
    ) -> list[list[float]]: ...

    async def fetch_open_interest(self, symbol: str) -> float: ...

    async def fetch_funding_rate(self, symbol: str) -> float: ...

    async def fetch_balance(self) -> dict[str, BalanceEntry]: ...

    async def fetch_positions(self, symbols: list[str] | None = None) -> list[VenuePosition]: ...

    async def fetch_open_orders(self, symbol: str) -> list[VenueOrder]: ...

    async def fetch_closed_orders(
        self,
        symbol: str,
        since: int | None = None,
        limit: int = 50,
    ) -> list[VenueOrder]: ...

    async def set_leverage(self, leverage: int, symbol: str) -> None: ...

    async def set_margin_mode(self, mode: MarginMode, symbol: str) -> None: ...

    async def create_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: OrderSide,
        amount: float,
        price: float | None = None,
        params: OrderParams | None = None,
    ) -> VenueOrder: ...

    async def cancel_order(self, order_id: str, symbol: str) -> None: ...

    async def close(self) -> None: ...


def opposite_side(side: OrderSide) -> OrderSide:
    return "sell" if side == "buy" else "buy"
